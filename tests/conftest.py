"""
Shared fixtures for Apollo Enrichment Studio tests

Provides contact factories and a scripted stand-in for the enrichment call so the
orchestrator, session and API layers can be exercised without network access.
"""
import asyncio
from typing import Callable, Iterable, List, Optional

import pytest

from enrichment_client import EnrichmentCallError
from models import (
    BatchResult,
    BatchStats,
    Contact,
    EnrichedContact,
    EnrichmentOptions,
    EnrichmentStatus,
)


def make_contacts(count: int) -> List[Contact]:
    return [
        Contact(first_name=f"First{i}", last_name=f"Last{i}", domain=f"company{i}.com")
        for i in range(count)
    ]


def fully_enriched(contact: Contact) -> EnrichedContact:
    """Successful enrichment with every quality field populated (score 100)"""
    return EnrichedContact(
        first_name=contact.first_name,
        last_name=contact.last_name,
        domain=contact.domain,
        email=contact.email,
        id=f"apollo-{contact.first_name.lower()}",
        title="VP Engineering",
        company="Acme",
        location="Austin, TX",
        linkedin_url=f"https://linkedin.com/in/{contact.first_name.lower()}",
        work_email=f"{contact.first_name.lower()}@{contact.domain}",
        enrichment_status=EnrichmentStatus.SUCCESS,
        confidence="high",
        data_completeness=70,
    )


class FakeEnrichmentCall:
    """
    Scripted enrichment call

    Args:
        fail_calls: 1-indexed call numbers that raise EnrichmentCallError
        enrich: Maps a contact to its enriched result
        errors: Optional call number -> exception to raise instead
        delay: Seconds to sleep inside every call
    """

    def __init__(
        self,
        fail_calls: Iterable[int] = (),
        enrich: Callable[[Contact], EnrichedContact] = fully_enriched,
        errors: Optional[dict] = None,
        delay: float = 0.0
    ):
        self.fail_calls = set(fail_calls)
        self.enrich = enrich
        self.errors = errors or {}
        self.delay = delay
        self.calls: List[List[Contact]] = []
        self.credentials: List[str] = []
        self.options: List[EnrichmentOptions] = []
        self.closed = False

    async def __call__(self, credential: str, batch: List[Contact], options: EnrichmentOptions) -> BatchResult:
        self.calls.append(list(batch))
        self.credentials.append(credential)
        self.options.append(options)
        call_number = len(self.calls)

        if self.delay:
            await asyncio.sleep(self.delay)
        if call_number in self.errors:
            raise self.errors[call_number]
        if call_number in self.fail_calls:
            raise EnrichmentCallError("Simulated Apollo outage")

        data = [self.enrich(contact) for contact in batch]
        successful = sum(1 for c in data if c.enrichment_status == EnrichmentStatus.SUCCESS)
        return BatchResult(
            success=True,
            data=data,
            stats=BatchStats(
                total_contacts=len(batch),
                successful_enrichments=successful,
                failed_enrichments=len(batch) - successful,
                api_calls_used=1,
                credits_used=len(batch),
            ),
        )

    @property
    def contacts_sent(self) -> List[Contact]:
        return [contact for batch in self.calls for contact in batch]

    async def close(self):
        self.closed = True


@pytest.fixture
def contacts_23() -> List[Contact]:
    return make_contacts(23)


@pytest.fixture
def fake_call() -> FakeEnrichmentCall:
    return FakeEnrichmentCall()
