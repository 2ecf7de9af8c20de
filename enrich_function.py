"""
Enrichment function: validates a batch request, forwards it to Apollo and returns merged results
Runs standalone or mounted inside the studio API
"""
import time
from contextlib import asynccontextmanager
from datetime import datetime
from json import JSONDecodeError
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from apollo_client import (
    ApolloAPIError,
    ApolloAuthError,
    ApolloEnrichmentCall,
    ApolloRateLimitError,
    get_apollo_client,
)
from config import ENRICHMENT_ROUTE, get_settings
from models import Contact, EnrichmentOptions

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
}


class InvalidRequestError(ValueError):
    """Request body failed validation"""
    pass


class RateLimiter:
    """Sliding-window request limiter keyed by client IP"""

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._requests: Dict[str, List[float]] = {}

    def _prune(self, window_start: float) -> None:
        """Forget clients with no requests left in the window"""
        stale = [ip for ip, times in self._requests.items() if not times or times[-1] <= window_start]
        for ip in stale:
            del self._requests[ip]

    def check(self, client_ip: str) -> bool:
        """Record a request; returns False if the client is over its limit"""
        now = self.clock()
        window_start = now - self.window_seconds
        self._prune(window_start)

        valid_requests = [t for t in self._requests.get(client_ip, []) if t > window_start]
        if len(valid_requests) >= self.limit:
            self._requests[client_ip] = valid_requests
            return False

        valid_requests.append(now)
        self._requests[client_ip] = valid_requests
        return True


def validate_request(body: object, max_contacts: int) -> Tuple[str, List[Contact], EnrichmentOptions]:
    """
    Validate an enrichment request body

    Args:
        body: Parsed JSON body
        max_contacts: Maximum contacts accepted per request

    Returns:
        (api key, contacts, options)

    Raises:
        InvalidRequestError: With a message suitable for the caller
    """
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")

    api_key = body.get("apiKey")
    if not api_key or not isinstance(api_key, str) or not api_key.strip():
        raise InvalidRequestError("Valid Apollo API key is required")

    raw_contacts = body.get("contacts")
    if not isinstance(raw_contacts, list):
        raise InvalidRequestError("Contacts array is required")
    if len(raw_contacts) == 0:
        raise InvalidRequestError("At least one contact is required")
    if len(raw_contacts) > max_contacts:
        raise InvalidRequestError(f"Maximum {max_contacts} contacts per request")

    contacts = []
    for index, raw in enumerate(raw_contacts):
        try:
            contacts.append(Contact.model_validate(raw))
        except PydanticValidationError:
            raise InvalidRequestError(f"Contact at index {index} must have firstName and lastName")

    # The dashboard historically sent "settings"; accept either key
    raw_options = body.get("options") or body.get("settings") or {}
    try:
        options = EnrichmentOptions.model_validate(raw_options)
    except PydanticValidationError:
        raise InvalidRequestError("Enrichment options must be boolean flags")

    return api_key.strip(), contacts, options


def client_ip_from(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _error_response(status_code: int, message: str, details: Optional[str] = None, **extra) -> JSONResponse:
    settings = get_settings()
    body = {
        "error": True,
        "message": message,
        "timestamp": datetime.utcnow().isoformat() + "Z",
        **extra,
    }
    if details and settings.debug_mode:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body, headers=CORS_HEADERS)


# Dependencies

_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter"""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(settings.function_rate_limit, settings.function_rate_window_seconds)
    return _rate_limiter


async def get_batch_enricher() -> ApolloEnrichmentCall:
    """Get an enrichment call backed by the global Apollo client"""
    return ApolloEnrichmentCall(await get_apollo_client())


router = APIRouter()


@router.post(ENRICHMENT_ROUTE)
@router.post("/enrich")
async def enrich_contacts(
    request: Request,
    enricher: ApolloEnrichmentCall = Depends(get_batch_enricher),
    rate_limiter: RateLimiter = Depends(get_rate_limiter)
):
    """Enrich up to one batch of contacts through Apollo"""
    settings = get_settings()
    client_ip = client_ip_from(request)

    if not rate_limiter.check(client_ip):
        logger.warning(f"Rate limit exceeded for {client_ip}")
        return _error_response(
            429,
            "Too many requests. Please try again later.",
            retryAfter=rate_limiter.window_seconds,
        )

    try:
        body = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        return _error_response(400, "Request body must be valid JSON")

    try:
        api_key, contacts, options = validate_request(body, settings.max_contacts_per_request)

        logger.info(f"Enriching {len(contacts)} contacts from {client_ip}")
        result = await enricher(api_key, contacts, options)

        return JSONResponse(
            status_code=200,
            content=result.to_wire(),
            headers={**CORS_HEADERS, **NO_CACHE_HEADERS},
        )

    except InvalidRequestError as e:
        logger.warning(f"Rejected enrichment request from {client_ip}: {e}")
        return _error_response(400, str(e))
    except ApolloAuthError as e:
        logger.error(f"Apollo rejected the API key: {e}")
        return _error_response(401, "Invalid or missing API key", str(e))
    except ApolloRateLimitError as e:
        logger.warning(f"Apollo rate limit hit: {e}")
        return _error_response(429, "Apollo rate limit exceeded", str(e))
    except ApolloAPIError as e:
        logger.error(f"Apollo API request failed: {e}")
        return _error_response(400, "Apollo API request failed", str(e))
    except Exception as e:
        logger.error(f"Enrichment error: {e}")
        return _error_response(500, "Internal server error", str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan manager"""
    logger.info("Starting Apollo enrichment function")
    yield
    logger.info("Shutting down Apollo enrichment function")
    client = await get_apollo_client()
    await client.close()


# Create FastAPI app
app = FastAPI(
    title="Apollo Enrichment Function",
    description="Forwards batches of contacts to Apollo and returns enriched results",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(router)


@app.get("/health")
async def health_check():
    """Basic health check endpoint"""
    return {"status": "healthy", "service": "apollo-enrichment-function"}
