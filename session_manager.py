"""
Studio session manager
Holds the dashboard's uploaded contacts, configuration, run task and log,
and turns run events into human-readable log entries
"""
import asyncio
from collections import deque
from typing import Deque, List, Optional

from loguru import logger

from config import SUPPORTED_BATCH_SIZES, SUPPORTED_RETRY_ATTEMPTS, get_settings
from contacts import SAMPLE_CONTACTS, parse_contacts_csv, remove_duplicates
from enrichment_client import EnrichmentCall, EnrichmentFunctionClient
from exporter import ExportError, export_csv
from models import (
    BatchCompleted,
    BatchStarted,
    Contact,
    EnrichedContact,
    EnrichmentOptions,
    LogEntry,
    RunCompleted,
    RunContext,
    RunEvent,
    RunFailed,
    RunPaused,
    RunState,
    RunStatistics,
)
from orchestrator import BatchEnrichmentOrchestrator, OrchestrationError, ValidationError

MAX_LOG_ENTRIES = 100


class SessionConflictError(Exception):
    """Requested action does not fit the current run state"""
    pass


class StudioSession:
    """State behind one enrichment dashboard"""

    def __init__(self, enrichment_call: Optional[EnrichmentCall] = None, inter_batch_delay: Optional[float] = None):
        self.settings = get_settings()
        self.enrichment_call = enrichment_call or EnrichmentFunctionClient()
        self.inter_batch_delay = inter_batch_delay

        self.api_key: str = self.settings.apollo_api_key or ""
        self.batch_size: int = self.settings.batch_size
        self.retry_attempts: int = self.settings.retry_attempts
        self.options = EnrichmentOptions()
        self.exclude_duplicates: bool = self.settings.exclude_duplicates

        self.contacts: List[Contact] = []
        self.duplicates: int = 0
        self.logs: Deque[LogEntry] = deque(maxlen=MAX_LOG_ENTRIES)

        self.orchestrator = self._build_orchestrator()
        self._task: Optional[asyncio.Task] = None

    def _build_orchestrator(self) -> BatchEnrichmentOrchestrator:
        orchestrator = BatchEnrichmentOrchestrator(
            self.enrichment_call,
            inter_batch_delay=self.inter_batch_delay,
            retry_attempts=self.retry_attempts,
        )
        orchestrator.subscribe(self._on_event)
        return orchestrator

    def add_log(self, message: str, level: str = "info") -> None:
        """Add a dashboard log entry, newest first"""
        self.logs.appendleft(LogEntry(message=message, level=level))

    def _on_event(self, event: RunEvent) -> None:
        if isinstance(event, BatchStarted):
            self.add_log(f"Processing batch {event.index}/{event.total} ({event.size} contacts)")
        elif isinstance(event, BatchCompleted):
            if event.error:
                self.add_log(event.error, "error")
            else:
                self.add_log(f"Batch {event.index} enriched: {event.success_count} successful, {event.fail_count} failed",
                             "success" if event.success_count else "error")
        elif isinstance(event, RunCompleted):
            stats = event.stats
            self.add_log(f"Enrichment completed! {stats.successful} successful, {stats.failed} failed "
                         f"(Quality Score: {stats.quality_score}%)", "success")
        elif isinstance(event, RunPaused):
            self.add_log(f"Enrichment paused - {event.stats.successful} successful, {event.stats.failed} failed")
        elif isinstance(event, RunFailed):
            self.add_log(f"Enrichment process failed: {event.error}", "error")

    @property
    def is_running(self) -> bool:
        if self._task is not None and not self._task.done():
            return True
        return self.orchestrator.state == RunState.RUNNING

    def _ensure_idle(self, action: str) -> None:
        if self.is_running:
            raise SessionConflictError(f"Cannot {action} while an enrichment run is in progress")

    # Contacts

    def load_csv(self, text: str, filename: str = "upload.csv") -> List[Contact]:
        """
        Replace the uploaded contacts with the rows of a CSV file

        Args:
            text: CSV content
            filename: Name shown in the log

        Returns:
            The contacts kept after duplicate removal
        """
        self._ensure_idle("upload contacts")
        self.add_log(f"Uploading file: {filename}")

        try:
            parsed = parse_contacts_csv(text)
        except ValueError as e:
            self.add_log(f"Error parsing CSV: {e}", "error")
            raise

        if self.exclude_duplicates:
            unique, duplicates = remove_duplicates(parsed)
        else:
            unique, duplicates = parsed, []

        self.contacts = unique
        self.duplicates = len(duplicates)
        self.add_log(f"Uploaded {len(unique)} unique contacts ({len(duplicates)} duplicates removed)", "success")
        logger.info(f"Loaded {len(unique)} contacts from {filename}, {len(duplicates)} duplicates removed")
        return unique

    def load_sample(self) -> List[Contact]:
        self._ensure_idle("load sample data")
        self.contacts = list(SAMPLE_CONTACTS)
        self.duplicates = 0
        self.add_log(f"Loaded {len(self.contacts)} sample contacts for testing")
        return self.contacts

    def clear(self) -> None:
        """Forget contacts, results and statistics"""
        self._ensure_idle("clear data")
        self.contacts = []
        self.duplicates = 0
        self.orchestrator = self._build_orchestrator()
        self.add_log("Cleared all data")

    # Configuration

    def update_settings(
        self,
        api_key: Optional[str] = None,
        batch_size: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        options: Optional[EnrichmentOptions] = None,
        exclude_duplicates: Optional[bool] = None
    ) -> None:
        """
        Update run configuration

        Raises:
            ValidationError: If a value is not one the studio offers
            SessionConflictError: If a run is in progress
        """
        self._ensure_idle("change settings")

        if batch_size is not None and batch_size not in SUPPORTED_BATCH_SIZES:
            raise ValidationError(f"batch size must be one of {list(SUPPORTED_BATCH_SIZES)}")
        if retry_attempts is not None and retry_attempts not in SUPPORTED_RETRY_ATTEMPTS:
            raise ValidationError(f"retry attempts must be one of {list(SUPPORTED_RETRY_ATTEMPTS)}")

        if api_key is not None:
            self.api_key = api_key
        if batch_size is not None:
            self.batch_size = batch_size
        if options is not None:
            self.options = options
        if exclude_duplicates is not None:
            self.exclude_duplicates = exclude_duplicates
        if retry_attempts is not None:
            self.retry_attempts = retry_attempts
            self.orchestrator.retry_attempts = retry_attempts

    # Run control

    def start(self) -> None:
        """
        Start a fresh enrichment run in the background

        Raises:
            ValidationError: Missing API key or contacts
            SessionConflictError: A run is already in progress
        """
        self._ensure_idle("start enrichment")

        if not self.api_key.strip():
            self.add_log("Please enter your Apollo API key", "error")
            raise ValidationError("missing credential")
        if not self.contacts:
            self.add_log("Please upload a CSV file first", "error")
            raise ValidationError("no contacts")

        self.orchestrator.validate(self.contacts, self.api_key, self.batch_size)
        self.add_log("Starting Apollo enrichment process...")
        self._launch(self.orchestrator.run(self.contacts, self.api_key, self.batch_size, self.options))

    def pause(self) -> bool:
        paused = self.orchestrator.pause()
        if paused:
            self.add_log("Enrichment paused")
        return paused

    def resume(self) -> None:
        """
        Continue a paused run over the contacts it has not reached

        Raises:
            SessionConflictError: If there is no paused run
        """
        self._ensure_idle("resume enrichment")
        if self.orchestrator.state != RunState.PAUSED:
            raise SessionConflictError("There is no paused enrichment run to resume")

        remaining = len(self.orchestrator.context.remaining_contacts)
        self.add_log(f"Resuming enrichment for {remaining} remaining contacts")
        self._launch(self.orchestrator.resume())

    def _launch(self, coro) -> None:
        self._task = asyncio.create_task(self._run_guarded(coro))

    async def _run_guarded(self, coro) -> Optional[RunContext]:
        try:
            return await coro
        except OrchestrationError as e:
            # Already logged and surfaced through RunFailed
            logger.debug(f"Background run ended with orchestration error: {e}")
            return e.context

    async def wait(self) -> Optional[RunContext]:
        """Wait for the background run, if any, to stop"""
        if self._task is None:
            return self.orchestrator.context
        return await self._task

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Pause any running enrichment, wait for it to stop and close the enrichment call

        Args:
            timeout: Seconds to wait for the in-flight batch before cancelling it
                     (defaults to the request timeout)
        """
        timeout = self.settings.request_timeout if timeout is None else timeout
        self.pause()

        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Enrichment run did not stop within {timeout}s, cancelled")

        close = getattr(self.enrichment_call, "close", None)
        if close:
            await close()

    # Reporting

    @property
    def results(self) -> List[EnrichedContact]:
        context = self.orchestrator.context
        return context.results if context else []

    def status(self) -> dict:
        context = self.orchestrator.context
        stats = context.stats if context else RunStatistics()
        return {
            "state": self.orchestrator.state.value,
            "runId": context.run_id if context else None,
            "totalContacts": len(self.contacts),
            "duplicates": self.duplicates,
            "currentBatch": context.completed_batches if context else 0,
            "totalBatches": context.total_batches if context else 0,
            "progress": context.progress_percent if context else 0.0,
            "stats": stats.to_wire(),
            "errors": list(context.errors) if context else [],
            "errorMessage": context.error_message if context else None,
            "settings": {
                "batchSize": self.batch_size,
                "retryAttempts": self.retry_attempts,
                "excludeDuplicates": self.exclude_duplicates,
                "hasApiKey": bool(self.api_key.strip()),
                "options": self.options.to_wire(),
            },
        }

    def export(self) -> str:
        """CSV of the current aggregate; raises ExportError when empty"""
        try:
            content = export_csv(self.results)
        except ExportError as e:
            self.add_log(str(e), "error")
            raise
        self.add_log(f"Exported {len(self.results)} enriched contacts", "success")
        return content


# Global session instance
_session_manager: Optional[StudioSession] = None


def get_session_manager() -> StudioSession:
    """Get the global studio session"""
    global _session_manager
    if _session_manager is None:
        _session_manager = StudioSession()
    return _session_manager
