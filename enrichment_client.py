"""
Client for the enrichment function: posts one batch of contacts and returns the merged results
"""
from typing import Awaitable, Callable, List, Optional

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from config import get_settings
from models import BatchResult, Contact, EnrichmentOptions

# (credential, batch, options) -> BatchResult
EnrichmentCall = Callable[[str, List[Contact], EnrichmentOptions], Awaitable[BatchResult]]


class EnrichmentCallError(Exception):
    """A single enrichment call failed"""
    kind = "generic"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EnrichmentAuthError(EnrichmentCallError):
    """The API credential was rejected"""
    kind = "auth"


class EnrichmentRateLimitError(EnrichmentCallError):
    """The function or Apollo is rate limiting us"""
    kind = "rate_limit"


class EnrichmentBadRequestError(EnrichmentCallError):
    """The batch itself was rejected as malformed"""
    kind = "bad_request"


class EnrichmentTimeoutError(EnrichmentCallError):
    """The call did not answer in time"""
    kind = "timeout"


class EnrichmentConnectionError(EnrichmentCallError):
    """The function could not be reached"""
    kind = "connection"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text


class EnrichmentFunctionClient:
    """HTTP client for the enrichment function"""

    def __init__(self, endpoint_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = get_settings()
        self.endpoint_url = endpoint_url or self.settings.enrichment_endpoint
        self._client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "Apollo-Enrichment-Studio/1.0"
                }
            )
        return self._client

    def _handle_api_error(self, response: httpx.Response) -> None:
        """Map non-success responses to enrichment call errors"""
        if response.is_success:
            return
        message = f"API request failed: {response.status_code} - {_error_message(response)}"
        if response.status_code == 401:
            raise EnrichmentAuthError(message, 401)
        elif response.status_code == 429:
            raise EnrichmentRateLimitError(message, 429)
        elif response.status_code == 400:
            raise EnrichmentBadRequestError(message, 400)
        raise EnrichmentCallError(message, response.status_code)

    async def __call__(
        self,
        credential: str,
        batch: List[Contact],
        options: EnrichmentOptions
    ) -> BatchResult:
        """
        Enrich one batch through the function

        Args:
            credential: Apollo API key
            batch: Contacts to enrich, in order
            options: Enrichment options forwarded verbatim

        Returns:
            BatchResult parsed from the response body

        Raises:
            EnrichmentCallError: or one of its subclasses on any failure
        """
        payload = {
            "apiKey": credential,
            "contacts": [contact.to_wire() for contact in batch],
            "options": options.to_wire(),
        }

        client = await self._get_client()
        try:
            response = await client.post(self.endpoint_url, json=payload)
        except httpx.TimeoutException as e:
            raise EnrichmentTimeoutError(f"Enrichment request timed out: {e}")
        except httpx.ConnectError as e:
            raise EnrichmentConnectionError(f"Enrichment request failed: could not connect to {self.endpoint_url}: {e}")
        except httpx.HTTPError as e:
            raise EnrichmentCallError(f"Enrichment request failed: {e}")

        self._handle_api_error(response)

        try:
            result = BatchResult.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Malformed enrichment response from {self.endpoint_url}: {e}")
            raise EnrichmentCallError(f"Malformed enrichment response: {e}")

        logger.debug(f"Enrichment function answered for {len(batch)} contacts (success={result.success})")
        return result

    async def close(self):
        """Close HTTP client connections"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Enrichment function client closed")
