"""
Tests for the studio session
"""
import asyncio

import pytest

import config
from conftest import FakeEnrichmentCall
from exporter import ExportError
from models import EnrichmentOptions
from orchestrator import ValidationError
from session_manager import MAX_LOG_ENTRIES, SessionConflictError, StudioSession

CSV_TEXT = "firstName,lastName,domain\n" + "".join(
    f"Person{i},Test{i},company{i}.com\n" for i in range(12)
) + "Person0,Test0,company0.com\n"


def make_session(call=None) -> StudioSession:
    session = StudioSession(enrichment_call=call or FakeEnrichmentCall(), inter_batch_delay=0)
    session.update_settings(api_key="", batch_size=5)
    return session


def messages(session: StudioSession):
    return [entry.message for entry in session.logs]


class TestContacts:

    def test_load_csv_removes_duplicates(self):
        session = make_session()
        contacts = session.load_csv(CSV_TEXT, "people.csv")

        assert len(contacts) == 12
        assert session.duplicates == 1
        assert session.logs[0].message == "Uploaded 12 unique contacts (1 duplicates removed)"
        assert session.logs[0].level == "success"
        assert session.logs[1].message == "Uploading file: people.csv"

    def test_load_csv_keeps_duplicates_when_disabled(self):
        session = make_session()
        session.update_settings(exclude_duplicates=False)

        assert len(session.load_csv(CSV_TEXT)) == 13
        assert session.duplicates == 0

    def test_load_sample(self):
        session = make_session()
        assert len(session.load_sample()) == 5
        assert messages(session)[0] == "Loaded 5 sample contacts for testing"

    def test_clear(self):
        session = make_session()
        session.load_sample()
        session.clear()

        assert session.contacts == []
        assert session.results == []
        assert session.status()["state"] == "idle"

    def test_log_is_bounded(self):
        session = make_session()
        for i in range(MAX_LOG_ENTRIES + 20):
            session.add_log(f"entry {i}")

        assert len(session.logs) == MAX_LOG_ENTRIES
        assert session.logs[0].message == f"entry {MAX_LOG_ENTRIES + 19}"


class TestSettings:

    def test_update(self):
        session = make_session()
        options = EnrichmentOptions(reveal_phone_numbers=True)
        session.update_settings(api_key="key", batch_size=25, retry_attempts=3, options=options)

        settings = session.status()["settings"]
        assert settings["batchSize"] == 25
        assert settings["retryAttempts"] == 3
        assert settings["hasApiKey"] is True
        assert settings["options"]["revealPhoneNumbers"] is True
        assert session.orchestrator.retry_attempts == 3

    @pytest.mark.parametrize("kwargs", [{"batch_size": 7}, {"retry_attempts": 2}])
    def test_unsupported_values(self, kwargs):
        session = make_session()
        with pytest.raises(ValidationError):
            session.update_settings(**kwargs)


class TestRun:

    def test_start_without_api_key(self):
        session = make_session()
        session.load_sample()

        with pytest.raises(ValidationError):
            session.start()

        assert session.logs[0].message == "Please enter your Apollo API key"
        assert session.logs[0].level == "error"

    def test_start_without_contacts(self):
        session = make_session()
        session.update_settings(api_key="key")

        with pytest.raises(ValidationError):
            session.start()

        assert session.logs[0].message == "Please upload a CSV file first"

    @pytest.mark.asyncio
    async def test_full_run(self):
        call = FakeEnrichmentCall(fail_calls={2})
        session = make_session(call)
        session.load_csv(CSV_TEXT)
        session.update_settings(api_key="key")

        session.start()
        context = await session.wait()

        status = session.status()
        assert status["state"] == "completed"
        assert status["totalBatches"] == 3
        assert status["progress"] == 100.0
        assert status["stats"]["processed"] == 12
        assert status["stats"]["successful"] == 7
        assert status["stats"]["failed"] == 5
        assert status["errors"] == ["Batch 2 failed: Simulated Apollo outage"]
        assert context.run_id == status["runId"]

        assert "Processing batch 1/3 (5 contacts)" in messages(session)
        assert "Batch 2 failed: Simulated Apollo outage" in messages(session)
        assert messages(session)[0].startswith("Enrichment completed! 7 successful, 5 failed")

        lines = session.export().strip().splitlines()
        assert len(lines) == 13
        assert messages(session)[0] == "Exported 12 enriched contacts"

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        session = make_session(FakeEnrichmentCall(delay=0.05))
        session.load_csv(CSV_TEXT)
        session.update_settings(api_key="key")

        session.start()
        await asyncio.sleep(0.02)
        assert session.pause() is True
        paused = await session.wait()

        assert paused.state.value == "paused"
        assert len(session.results) == 5
        assert "Enrichment paused" in messages(session)

        session.resume()
        assert messages(session)[0] == "Resuming enrichment for 7 remaining contacts"
        resumed = await session.wait()

        assert resumed.state.value == "completed"
        assert len(session.results) == 12

    @pytest.mark.asyncio
    async def test_double_start_refused(self):
        session = make_session(FakeEnrichmentCall(delay=0.05))
        session.load_sample()
        session.update_settings(api_key="key")

        session.start()
        with pytest.raises(SessionConflictError):
            session.start()
        with pytest.raises(SessionConflictError):
            session.load_sample()

        await session.wait()
        assert session.is_running is False

    def test_resume_without_paused_run(self):
        session = make_session()
        with pytest.raises(SessionConflictError):
            session.resume()

    def test_export_without_results(self):
        session = make_session()
        with pytest.raises(ExportError):
            session.export()
        assert session.logs[0].message == "No enriched data to export"
        assert session.logs[0].level == "error"


class TestShutdown:

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_batch(self):
        call = FakeEnrichmentCall(delay=0.05)
        session = make_session(call)
        session.load_csv(CSV_TEXT)
        session.update_settings(api_key="key")

        session.start()
        await asyncio.sleep(0.02)
        await session.shutdown(timeout=5)

        assert session._task.done()
        assert session.orchestrator.state.value == "paused"
        assert len(session.results) == 5
        assert call.closed is True

    @pytest.mark.asyncio
    async def test_cancels_run_that_overstays(self):
        call = FakeEnrichmentCall(delay=5)
        session = make_session(call)
        session.load_sample()
        session.update_settings(api_key="key")

        session.start()
        await asyncio.sleep(0.02)
        await session.shutdown(timeout=0.05)

        assert session._task.done()
        assert session.orchestrator.state.value == "paused"
        assert session.results == []
        assert call.closed is True

    @pytest.mark.asyncio
    async def test_idle_session_closes_call(self):
        call = FakeEnrichmentCall()
        await make_session(call).shutdown()
        assert call.closed is True


def test_default_call_targets_studio_function_route(monkeypatch):
    monkeypatch.setattr(config, "_settings", config.Settings(enrichment_endpoint_url=None, host="0.0.0.0", port=9100))

    session = StudioSession()

    assert session.enrichment_call.endpoint_url == "http://localhost:9100/api/apollo-enrichment"
