"""
Tests for the Apollo client and response merging
"""
import json

import httpx
import pytest

from apollo_client import (
    ApolloAPIError,
    ApolloAuthError,
    ApolloBadRequestError,
    ApolloClient,
    ApolloConnectionError,
    ApolloEnrichmentCall,
    ApolloRateLimitError,
    ApolloTimeoutError,
    calculate_data_completeness,
    process_contacts,
    summarize_batch,
)
from models import Contact, EnrichmentOptions, EnrichmentStatus

FULL_PERSON = {
    "id": "p-1",
    "title": "CEO",
    "email": "tim@apollo.io",
    "personal_email": "tim@gmail.com",
    "linkedin_url": "https://linkedin.com/in/tim",
    "twitter_url": "https://twitter.com/tim",
    "direct_phone_number": "+1 555 0100",
    "city": "San Francisco",
    "state": "CA",
    "organization": {"name": "Apollo", "industry": "Software", "estimated_num_employees": 500},
    "employment_history": [
        {"title": "CEO", "organization_name": "Apollo", "current": True},
        {"title": "Founder", "organization_name": "Braingenie"},
        {"title": "Engineer", "organization_name": "A"},
        {"title": "Intern", "organization_name": "B"},
    ],
    "education": [
        {"school_name": "Harvard", "degree": "BA", "field_of_study": "Math"},
        {"school_name": "MIT"},
        {"school_name": "Stanford"},
    ],
}

CONTACTS = [
    Contact(first_name="Tim", last_name="Zheng", domain="apollo.io"),
    Contact(first_name="John", last_name="Doe", domain="salesforce.com"),
]


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestCompleteness:

    def test_full_record(self):
        assert calculate_data_completeness(FULL_PERSON) == 90

    def test_empty_record(self):
        assert calculate_data_completeness({}) == 0

    def test_employment_history_weighs_double(self):
        person = {"title": "CTO", "employment_history": [{"title": "CTO"}]}
        assert calculate_data_completeness(person) == 30


class TestProcessContacts:

    def test_positional_merge(self):
        enriched = process_contacts({"people": [FULL_PERSON, None]}, CONTACTS)

        tim, john = enriched
        assert tim.enrichment_status == EnrichmentStatus.SUCCESS
        assert tim.first_name == "Tim"
        assert tim.company == "Apollo"
        assert tim.company_size == 500
        assert tim.location == "San Francisco, CA"
        assert tim.work_email == "tim@apollo.io"
        assert tim.confidence == "high"
        assert tim.data_completeness == 90
        assert len(tim.employment_history) == 3
        assert tim.employment_history[0].company == "Apollo"
        assert len(tim.education) == 2
        assert tim.education[0].field == "Math"

        assert john.enrichment_status == EnrichmentStatus.FAILED
        assert john.error == "No Apollo match found"
        assert john.confidence == "low"
        assert john.domain == "salesforce.com"

    def test_short_people_list_marks_rest_failed(self):
        enriched = process_contacts({"people": [FULL_PERSON]}, CONTACTS)
        assert [c.enrichment_status for c in enriched] == [EnrichmentStatus.SUCCESS, EnrichmentStatus.FAILED]

    def test_missing_people_key(self):
        enriched = process_contacts({}, CONTACTS)
        assert all(c.enrichment_status == EnrichmentStatus.FAILED for c in enriched)

    def test_options_exclude_social_and_history(self):
        options = EnrichmentOptions(include_social_profiles=False, include_employment_history=False)
        tim = process_contacts({"people": [FULL_PERSON]}, CONTACTS[:1], options)[0]

        assert tim.linkedin_url is None
        assert tim.twitter_url is None
        assert tim.employment_history == []

    def test_location_with_only_city(self):
        person = {"id": "p-2", "city": "Berlin"}
        assert process_contacts({"people": [person]}, CONTACTS[:1])[0].location == "Berlin"

    def test_summary(self):
        stats = summarize_batch(process_contacts({"people": [FULL_PERSON, None]}, CONTACTS))

        assert stats.total_contacts == 2
        assert stats.successful_enrichments == 1
        assert stats.failed_enrichments == 1
        assert stats.average_data_completeness == 45
        assert stats.api_calls_used == 1
        assert stats.credits_used == 2


class TestApolloClient:

    @pytest.mark.asyncio
    async def test_match_people_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"people": [FULL_PERSON, None]})

        client = ApolloClient(client=mock_client(handler))
        options = EnrichmentOptions(reveal_personal_emails=False, reveal_phone_numbers=True)
        data = await client.match_people("secret", CONTACTS, options)

        assert seen["url"].endswith("/people/match")
        assert seen["body"]["api_key"] == "secret"
        assert seen["body"]["reveal_personal_emails"] is False
        assert seen["body"]["reveal_phone_number"] is True
        assert seen["body"]["people"][0] == {
            "first_name": "Tim",
            "last_name": "Zheng",
            "organization_domain": "apollo.io",
            "email": None,
        }
        assert data["people"][0]["id"] == "p-1"
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error_type", [
        (401, ApolloAuthError),
        (403, ApolloAPIError),
        (400, ApolloBadRequestError),
        (422, ApolloBadRequestError),
        (429, ApolloRateLimitError),
        (503, ApolloAPIError),
    ])
    async def test_error_mapping(self, status, error_type):
        client = ApolloClient(client=mock_client(lambda request: httpx.Response(status, text="nope")))

        with pytest.raises(error_type) as exc_info:
            await client.match_people("secret", CONTACTS)

        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transport_error,error_type,kind", [
        (httpx.ConnectError, ApolloConnectionError, "connection"),
        (httpx.ReadTimeout, ApolloTimeoutError, "timeout"),
    ])
    async def test_transport_failure_mapped(self, transport_error, error_type, kind):
        def handler(request):
            raise transport_error("connection refused", request=request)

        client = ApolloClient(client=mock_client(handler))
        with pytest.raises(error_type, match="Apollo API call failed") as exc_info:
            await client.match_people("secret", CONTACTS)

        assert exc_info.value.kind == kind

    @pytest.mark.asyncio
    async def test_unexpected_failure_wrapped(self):
        client = ApolloClient(client=mock_client(lambda request: httpx.Response(200, text="not json")))

        with pytest.raises(ApolloAPIError, match="Apollo API call failed") as exc_info:
            await client.match_people("secret", CONTACTS)

        assert exc_info.value.kind == "generic"

    @pytest.mark.asyncio
    async def test_enrich_batch(self):
        handler = lambda request: httpx.Response(200, json={"people": [FULL_PERSON, {}]})
        call = ApolloEnrichmentCall(ApolloClient(client=mock_client(handler)))

        result = await call("secret", CONTACTS, EnrichmentOptions())

        assert result.success is True
        assert len(result.data) == 2
        assert result.stats.successful_enrichments == 1
        assert result.timestamp is not None
        await call.close()
