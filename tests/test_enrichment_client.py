"""
Tests for the enrichment function client
"""
import json

import httpx
import pytest

from conftest import fully_enriched, make_contacts
from enrichment_client import (
    EnrichmentAuthError,
    EnrichmentBadRequestError,
    EnrichmentCallError,
    EnrichmentConnectionError,
    EnrichmentFunctionClient,
    EnrichmentRateLimitError,
    EnrichmentTimeoutError,
)
from models import BatchResult, BatchStats, EnrichmentOptions, EnrichmentStatus

ENDPOINT = "http://function.test/api/apollo-enrichment"


def function_client(handler) -> EnrichmentFunctionClient:
    transport = httpx.MockTransport(handler)
    return EnrichmentFunctionClient(ENDPOINT, client=httpx.AsyncClient(transport=transport))


@pytest.mark.asyncio
async def test_posts_batch_and_parses_result():
    contacts = make_contacts(2)
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        result = BatchResult(
            success=True,
            data=[fully_enriched(c) for c in contacts],
            stats=BatchStats(total_contacts=2, successful_enrichments=2, credits_used=2),
        )
        return httpx.Response(200, json=result.to_wire())

    client = function_client(handler)
    result = await client("secret", contacts, EnrichmentOptions(reveal_phone_numbers=True))

    assert seen["url"] == ENDPOINT
    assert seen["body"]["apiKey"] == "secret"
    assert seen["body"]["contacts"][0]["firstName"] == "First0"
    assert seen["body"]["contacts"][0]["domain"] == "company0.com"
    assert seen["body"]["options"] == {
        "revealPersonalEmails": True,
        "revealPhoneNumbers": True,
        "includeSocialProfiles": True,
        "includeEmploymentHistory": True,
    }

    assert result.success is True
    assert [c.enrichment_status for c in result.data] == [EnrichmentStatus.SUCCESS] * 2
    assert result.data[0].linkedin_url == "https://linkedin.com/in/first0"
    assert result.stats.credits_used == 2
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error_type,kind", [
    (401, EnrichmentAuthError, "auth"),
    (429, EnrichmentRateLimitError, "rate_limit"),
    (400, EnrichmentBadRequestError, "bad_request"),
    (500, EnrichmentCallError, "generic"),
])
async def test_error_status_mapping(status, error_type, kind):
    client = function_client(
        lambda request: httpx.Response(status, json={"error": True, "message": "Apollo API request failed"})
    )

    with pytest.raises(error_type) as exc_info:
        await client("secret", make_contacts(1), EnrichmentOptions())

    assert exc_info.value.status_code == status
    assert exc_info.value.kind == kind
    assert str(exc_info.value) == f"API request failed: {status} - Apollo API request failed"


@pytest.mark.asyncio
async def test_invalid_json_is_malformed():
    client = function_client(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(EnrichmentCallError, match="Malformed enrichment response"):
        await client("secret", make_contacts(1), EnrichmentOptions())


@pytest.mark.asyncio
async def test_wrong_shape_is_malformed():
    client = function_client(lambda request: httpx.Response(200, json={"data": "not a list"}))

    with pytest.raises(EnrichmentCallError, match="Malformed enrichment response"):
        await client("secret", make_contacts(1), EnrichmentOptions())


@pytest.mark.asyncio
async def test_timeout():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    client = function_client(handler)
    with pytest.raises(EnrichmentTimeoutError) as exc_info:
        await client("secret", make_contacts(1), EnrichmentOptions())

    assert exc_info.value.kind == "timeout"


@pytest.mark.asyncio
async def test_connection_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = function_client(handler)
    with pytest.raises(EnrichmentConnectionError, match="Enrichment request failed") as exc_info:
        await client("secret", make_contacts(1), EnrichmentOptions())

    assert exc_info.value.kind == "connection"
