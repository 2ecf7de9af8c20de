"""
Apollo.io API client for people matching and contact enrichment
"""
import asyncio
from datetime import datetime
from typing import List, Optional

import httpx
from loguru import logger

from config import get_settings
from models import (
    BatchResult,
    BatchStats,
    Contact,
    EducationRecord,
    EmploymentRecord,
    EnrichedContact,
    EnrichmentOptions,
    EnrichmentStatus,
    round_half_up,
)


class ApolloAPIError(Exception):
    """Custom exception for Apollo API errors"""
    kind = "generic"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ApolloAuthError(ApolloAPIError):
    """Exception for invalid or missing API keys"""
    kind = "auth"


class ApolloRateLimitError(ApolloAPIError):
    """Exception for rate limit errors"""
    kind = "rate_limit"


class ApolloBadRequestError(ApolloAPIError):
    """Exception for rejected request payloads"""
    kind = "bad_request"


class ApolloTimeoutError(ApolloAPIError):
    """Apollo did not answer in time"""
    kind = "timeout"


class ApolloConnectionError(ApolloAPIError):
    """Apollo could not be reached"""
    kind = "connection"


# Fields counted towards data completeness; employment history weighs double
COMPLETENESS_FIELDS = [
    "title", "email", "linkedin_url", "direct_phone_number",
    "organization", "city", "state", "employment_history",
]


def calculate_data_completeness(person: dict) -> int:
    """
    Score how complete an Apollo person record is

    Args:
        person: Raw person record from Apollo

    Returns:
        Score between 0 and 100
    """
    score = 0
    for field in COMPLETENESS_FIELDS:
        if person.get(field):
            score += 20 if field == "employment_history" else 10
    return min(100, score)


def _format_location(person: dict) -> Optional[str]:
    parts = [part for part in (person.get("city"), person.get("state")) if part]
    return ", ".join(parts) if parts else None


def process_contacts(
    apollo_response: dict,
    original_contacts: List[Contact],
    options: Optional[EnrichmentOptions] = None
) -> List[EnrichedContact]:
    """
    Merge Apollo matches back onto the contacts that were sent

    Apollo answers positionally, so people[i] belongs to original_contacts[i].
    A missing or id-less person marks that contact as failed.

    Args:
        apollo_response: Parsed JSON body from the people match endpoint
        original_contacts: Contacts in the order they were sent
        options: Enrichment options used for the request

    Returns:
        One EnrichedContact per original contact, same order
    """
    options = options or EnrichmentOptions()
    people = apollo_response.get("people") or []
    timestamp = datetime.utcnow()

    enriched_contacts = []
    for index, original in enumerate(original_contacts):
        person = people[index] if index < len(people) and people[index] else {}
        organization = person.get("organization") or {}
        matched = bool(person.get("id"))

        employment_history = []
        if options.include_employment_history:
            employment_history = [
                EmploymentRecord(
                    title=job.get("title"),
                    company=job.get("organization_name"),
                    start_date=job.get("start_date"),
                    end_date=job.get("end_date"),
                    current=job.get("current"),
                )
                for job in (person.get("employment_history") or [])[:3]
            ]

        education = [
            EducationRecord(
                school=edu.get("school_name"),
                degree=edu.get("degree"),
                field=edu.get("field_of_study"),
                start_date=edu.get("start_date"),
                end_date=edu.get("end_date"),
            )
            for edu in (person.get("education") or [])[:2]
        ]

        social = options.include_social_profiles
        enriched_contacts.append(EnrichedContact(
            first_name=original.first_name,
            last_name=original.last_name,
            domain=original.domain,
            email=original.email,
            id=person.get("id"),
            title=person.get("title") or person.get("headline"),
            company=organization.get("name"),
            industry=organization.get("industry"),
            company_size=organization.get("estimated_num_employees"),
            location=_format_location(person),
            linkedin_url=person.get("linkedin_url") if social else None,
            twitter_url=person.get("twitter_url") if social else None,
            facebook_url=person.get("facebook_url") if social else None,
            work_email=person.get("email"),
            personal_email=person.get("personal_email"),
            direct_phone=person.get("direct_phone_number"),
            mobile_phone=person.get("mobile_phone_number"),
            employment_history=employment_history,
            education=education,
            enrichment_status=EnrichmentStatus.SUCCESS if matched else EnrichmentStatus.FAILED,
            enrichment_timestamp=timestamp,
            confidence="high" if matched else "low",
            data_completeness=calculate_data_completeness(person),
            error=None if matched else "No Apollo match found",
        ))

    return enriched_contacts


def summarize_batch(enriched_contacts: List[EnrichedContact]) -> BatchStats:
    """Summary statistics for one enrichment call"""
    total = len(enriched_contacts)
    successful = sum(1 for c in enriched_contacts if c.enrichment_status == EnrichmentStatus.SUCCESS)
    average = round_half_up(sum(c.data_completeness for c in enriched_contacts) / total) if total else 0
    return BatchStats(
        total_contacts=total,
        successful_enrichments=successful,
        failed_enrichments=total - successful,
        average_data_completeness=average,
        api_calls_used=1,
        credits_used=total,
    )


class ApolloClient:
    """Apollo.io API client with rate limiting and error handling"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.settings = get_settings()
        self.base_url = self.settings.apollo_base_url.rstrip("/")
        self.rate_limit = self.settings.apollo_rate_limit

        # Rate limiting
        self._request_times: List[float] = []
        self._rate_limit_lock = asyncio.Lock()

        # HTTP client
        self._client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout,
                headers={
                    "Content-Type": "application/json",
                    "Cache-Control": "no-cache",
                    "User-Agent": "Apollo-Enrichment-Studio/1.0"
                }
            )
        return self._client

    async def _enforce_rate_limit(self):
        """Enforce rate limiting to stay within API limits"""
        async with self._rate_limit_lock:
            current_time = asyncio.get_running_loop().time()

            # Remove requests older than 1 minute
            self._request_times = [
                t for t in self._request_times
                if current_time - t < 60
            ]

            if len(self._request_times) >= self.rate_limit:
                oldest_request = min(self._request_times)
                wait_time = 60 - (current_time - oldest_request)
                if wait_time > 0:
                    logger.warning(f"Apollo rate limit reached, waiting {wait_time:.2f} seconds")
                    await asyncio.sleep(wait_time)

            self._request_times.append(current_time)

    def _handle_api_error(self, response: httpx.Response) -> None:
        """Handle API errors and raise appropriate exceptions"""
        if response.status_code == 401:
            raise ApolloAuthError("Invalid Apollo API key", 401)
        elif response.status_code == 403:
            raise ApolloAPIError("Apollo API access forbidden - check your plan", 403)
        elif response.status_code in (400, 422):
            raise ApolloBadRequestError(
                f"Apollo API Error: {response.status_code} - {response.text}", response.status_code
            )
        elif response.status_code == 429:
            raise ApolloRateLimitError("Apollo rate limit exceeded", 429)
        elif response.status_code >= 500:
            raise ApolloAPIError(f"Apollo server error: {response.status_code}", response.status_code)
        elif not response.is_success:
            raise ApolloAPIError(
                f"Apollo API Error: {response.status_code} - {response.text}", response.status_code
            )

    async def match_people(
        self,
        api_key: str,
        contacts: List[Contact],
        options: Optional[EnrichmentOptions] = None
    ) -> dict:
        """
        Match a batch of contacts against Apollo's people database

        Args:
            api_key: Apollo API key supplied by the user
            contacts: Contacts to match, in order
            options: Reveal and include flags

        Returns:
            Parsed response body with a positional "people" list
        """
        options = options or EnrichmentOptions()
        await self._enforce_rate_limit()

        request_body = {
            "api_key": api_key,
            "reveal_personal_emails": options.reveal_personal_emails,
            "reveal_phone_number": options.reveal_phone_numbers,
            "people": [
                {
                    "first_name": contact.first_name,
                    "last_name": contact.last_name,
                    "organization_domain": contact.domain,
                    "email": contact.email,
                }
                for contact in contacts
            ],
        }

        try:
            client = await self._get_client()
            logger.debug(f"Matching {len(contacts)} people against Apollo")
            response = await client.post(f"{self.base_url}/people/match", json=request_body)
            self._handle_api_error(response)

            data = response.json()
            logger.debug(f"Apollo returned {len(data.get('people') or [])} people for {len(contacts)} contacts")
            return data

        except ApolloAPIError:
            raise
        except httpx.TimeoutException as e:
            logger.warning(f"Apollo people match timed out: {e}")
            raise ApolloTimeoutError(f"Apollo API call failed: request timed out: {e}")
        except httpx.ConnectError as e:
            logger.warning(f"Could not connect to Apollo: {e}")
            raise ApolloConnectionError(f"Apollo API call failed: could not connect: {e}")
        except Exception as e:
            logger.error(f"Apollo people match failed: {e}")
            raise ApolloAPIError(f"Apollo API call failed: {str(e)}")

    async def enrich_batch(
        self,
        api_key: str,
        contacts: List[Contact],
        options: Optional[EnrichmentOptions] = None
    ) -> BatchResult:
        """Match, merge and summarise one batch of contacts"""
        options = options or EnrichmentOptions()
        apollo_response = await self.match_people(api_key, contacts, options)
        enriched_contacts = process_contacts(apollo_response, contacts, options)
        stats = summarize_batch(enriched_contacts)

        logger.info(
            f"Apollo enrichment: {stats.successful_enrichments}/{stats.total_contacts} contacts matched "
            f"(average completeness {stats.average_data_completeness}%)"
        )
        return BatchResult(
            success=True,
            data=enriched_contacts,
            stats=stats,
            timestamp=datetime.utcnow(),
        )

    async def close(self):
        """Close HTTP client connections"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Apollo client closed")


class ApolloEnrichmentCall:
    """Calls Apollo in-process with the orchestrator's (credential, batch, options) contract"""

    def __init__(self, client: Optional[ApolloClient] = None):
        self.client = client or ApolloClient()

    async def __call__(
        self,
        credential: str,
        batch: List[Contact],
        options: EnrichmentOptions
    ) -> BatchResult:
        return await self.client.enrich_batch(credential, batch, options)

    async def close(self):
        await self.client.close()


# Global Apollo client instance - lazy loaded
_apollo_client: Optional[ApolloClient] = None


async def get_apollo_client() -> ApolloClient:
    """Get the global Apollo client instance"""
    global _apollo_client
    if _apollo_client is None:
        _apollo_client = ApolloClient()
    return _apollo_client
