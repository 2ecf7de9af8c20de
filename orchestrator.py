"""
Batch enrichment orchestrator
Splits a contact list into fixed-size batches, drives them one at a time through
the enrichment call and merges results, statistics and progress into a RunContext
"""
import asyncio
import inspect
import time
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from apollo_client import ApolloConnectionError, ApolloRateLimitError, ApolloTimeoutError
from config import get_settings
from enrichment_client import (
    EnrichmentCall,
    EnrichmentConnectionError,
    EnrichmentRateLimitError,
    EnrichmentTimeoutError,
)
from models import (
    BatchCompleted,
    BatchStarted,
    Contact,
    EnrichedContact,
    EnrichmentOptions,
    EnrichmentStatus,
    Progress,
    RunCompleted,
    RunContext,
    RunEvent,
    RunFailed,
    RunPaused,
    RunState,
    round_half_up,
)

# The enrichment function refuses more contacts than this per request
MAX_BATCH_SIZE = 25

RETRYABLE_ERRORS = (
    EnrichmentRateLimitError,
    EnrichmentTimeoutError,
    EnrichmentConnectionError,
    ApolloRateLimitError,
    ApolloTimeoutError,
    ApolloConnectionError,
    asyncio.TimeoutError,
)

RunListener = Callable[[RunEvent], object]


class ValidationError(Exception):
    """Run configuration rejected; the run never starts"""
    pass


class BatchEnrichmentError(Exception):
    """One batch's enrichment call failed; absorbed into failed contacts"""

    def __init__(self, batch_index: int, message: str, kind: str = "generic"):
        super().__init__(f"Batch {batch_index} failed: {message}")
        self.batch_index = batch_index
        self.message = message
        self.kind = kind


class OrchestrationError(Exception):
    """Unexpected fault that aborts the whole run"""

    def __init__(self, message: str, context: Optional[RunContext] = None):
        super().__init__(message)
        self.context = context


class CancellationToken:
    """Cooperative pause signal polled at batch boundaries"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns True as soon as the token is cancelled"""
        if self.cancelled or timeout <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False


def partition(contacts: Sequence[Contact], batch_size: int) -> List[List[Contact]]:
    """Split contacts into contiguous ordered batches of at most batch_size"""
    return [list(contacts[i:i + batch_size]) for i in range(0, len(contacts), batch_size)]


def calculate_quality_score(results: Sequence[EnrichedContact]) -> int:
    """Rounded mean quality score of the successful contacts, 0 if there are none"""
    successful = [c for c in results if c.enrichment_status == EnrichmentStatus.SUCCESS]
    if not successful:
        return 0
    return round_half_up(sum(c.quality_score for c in successful) / len(successful))


class BatchEnrichmentOrchestrator:
    """Drives one enrichment run at a time over a contact list"""

    def __init__(
        self,
        enrichment_call: EnrichmentCall,
        inter_batch_delay: Optional[float] = None,
        request_timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_wait: Optional[float] = None
    ):
        """
        Args:
            enrichment_call: Awaitable (credential, batch, options) -> BatchResult
            inter_batch_delay: Seconds to wait between batches
            request_timeout: Seconds before an enrichment call counts as failed
            retry_attempts: Total attempts per batch for retryable failures
            retry_wait: Multiplier for the exponential wait between attempts
        """
        self.settings = get_settings()
        self.enrichment_call = enrichment_call
        self.inter_batch_delay = self.settings.inter_batch_delay if inter_batch_delay is None else inter_batch_delay
        self.request_timeout = self.settings.request_timeout if request_timeout is None else request_timeout
        self.retry_attempts = self.settings.retry_attempts if retry_attempts is None else retry_attempts
        self.retry_wait = self.settings.retry_wait_seconds if retry_wait is None else retry_wait

        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

        self._listeners: List[RunListener] = []
        self._token = CancellationToken()
        self._context: Optional[RunContext] = None
        self._credential: Optional[str] = None
        self._options = EnrichmentOptions()

    @property
    def context(self) -> Optional[RunContext]:
        return self._context

    @property
    def state(self) -> RunState:
        return self._context.state if self._context else RunState.IDLE

    def subscribe(self, listener: RunListener) -> None:
        """Register a callable (sync or async) that receives every run event"""
        self._listeners.append(listener)

    async def _emit(self, event: RunEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Run event listener failed on {event.kind}: {e}")

    def validate(self, contacts: Sequence[Contact], credential: Optional[str], batch_size: int) -> None:
        """
        Check a run configuration before anything starts

        Raises:
            ValidationError: If the configuration cannot start a run
        """
        if self.state == RunState.RUNNING:
            raise ValidationError("an enrichment run is already in progress")
        if not contacts:
            raise ValidationError("no contacts")
        if not credential or not credential.strip():
            raise ValidationError("missing credential")
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValidationError(f"batch size must be between 1 and {MAX_BATCH_SIZE}")

    async def run(
        self,
        contacts: Sequence[Contact],
        credential: str,
        batch_size: Optional[int] = None,
        options: Optional[EnrichmentOptions] = None
    ) -> RunContext:
        """
        Enrich every contact, one batch at a time

        Args:
            contacts: Ordered contacts to enrich
            credential: Apollo API key forwarded to every call
            batch_size: Contacts per enrichment call
            options: Enrichment options forwarded to every call

        Returns:
            Final RunContext (completed or paused)

        Raises:
            ValidationError: Bad configuration, run never started
            OrchestrationError: Run aborted, partial results kept on the context
        """
        batch_size = self.settings.batch_size if batch_size is None else batch_size
        contacts = list(contacts)

        try:
            self.validate(contacts, credential, batch_size)
        except ValidationError as e:
            logger.error(f"Enrichment run rejected: {e}")
            raise

        run_id = f"run-{uuid.uuid4().hex}-{int(time.time() * 1000)}"
        self._credential = credential
        self._options = options or EnrichmentOptions()
        self._context = RunContext(run_id=run_id, contacts=contacts, batch_size=batch_size)

        logger.info(f"Starting enrichment run {run_id}: {len(contacts)} contacts in batches of {batch_size}")
        return await self._execute(self._context, contacts)

    def pause(self) -> bool:
        """
        Ask the running loop to stop at the next batch boundary

        Returns:
            True if a running run was signalled, False otherwise
        """
        if self.state != RunState.RUNNING:
            logger.warning("No running enrichment to pause")
            return False

        self._token.cancel()
        logger.info(f"Pause requested for run {self._context.run_id}")
        return True

    async def resume(self) -> RunContext:
        """
        Start a new run over the contacts a paused run never reached

        Statistics and the merged aggregate carry over; the remaining contacts
        are re-batched from the first unprocessed one.
        """
        context = self._context
        if context is None or context.state != RunState.PAUSED:
            raise ValidationError("no paused enrichment run to resume")

        remaining = context.remaining_contacts
        logger.info(f"Resuming run {context.run_id}: {len(remaining)} contacts remaining")
        return await self._execute(context, remaining)

    async def _execute(self, context: RunContext, contacts: List[Contact]) -> RunContext:
        batches = partition(contacts, context.batch_size)
        token = CancellationToken()
        self._token = token

        self._context = context.model_copy(update={
            "state": RunState.RUNNING,
            "total_batches": len(batches),
            "completed_batches": 0,
            "error_message": None,
            "started_at": context.started_at or datetime.utcnow(),
        })

        try:
            return await self._run_batches(self._context, batches, token)

        except asyncio.CancelledError:
            logger.info(f"Run {self._context.run_id} was cancelled")
            self._context = self._context.model_copy(update={"state": RunState.PAUSED})
            raise
        except Exception as e:
            current = self._context
            stats = current.stats.model_copy(update={"quality_score": calculate_quality_score(current.results)})
            failed_context = current.model_copy(update={
                "state": RunState.FAILED,
                "stats": stats,
                "error_message": str(e),
                "completed_at": datetime.utcnow(),
            })
            self._context = failed_context

            logger.error(f"Enrichment run {current.run_id} failed: {e}")
            await self._emit(RunFailed(error=str(e), stats=stats))

            if isinstance(e, OrchestrationError):
                e.context = failed_context
                raise
            raise OrchestrationError(f"Enrichment run failed: {e}", failed_context) from e

    async def _run_batches(
        self,
        context: RunContext,
        batches: List[List[Contact]],
        token: CancellationToken
    ) -> RunContext:
        total = len(batches)

        for index, batch in enumerate(batches, start=1):
            if token.cancelled:
                logger.info(f"Enrichment paused by user before batch {index}/{total}")
                break

            await self._emit(BatchStarted(index=index, total=total, size=len(batch)))
            logger.info(f"Processing batch {index}/{total} ({len(batch)} contacts)")

            context, success_count, fail_count, error = await self._process_batch(context, batch, index)
            self._context = context

            await self._emit(BatchCompleted(index=index, success_count=success_count, fail_count=fail_count, error=error))
            await self._emit(Progress(
                completed_batches=context.completed_batches,
                total_batches=total,
                percent=context.progress_percent,
            ))

            if index < total and not token.cancelled:
                await token.wait(self.inter_batch_delay)

        return await self._finish(context)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=60),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        )

    async def _process_batch(
        self,
        context: RunContext,
        batch: List[Contact],
        index: int
    ) -> Tuple[RunContext, int, int, Optional[str]]:
        """
        Enrich one batch and derive the next RunContext

        Returns:
            (new context, successful count, failed count, batch error message)
        """
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    result = await asyncio.wait_for(
                        self.enrichment_call(self._credential, batch, self._options),
                        timeout=self.request_timeout,
                    )
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                message = f"Enrichment call timed out after {self.request_timeout}s"
                kind = "timeout"
            else:
                message = str(e) or e.__class__.__name__
                kind = getattr(e, "kind", "generic")
            error = BatchEnrichmentError(index, message, kind)
            return self._absorb_failure(context, batch, error, attempts), 0, len(batch), str(error)

        if not result.success:
            error = BatchEnrichmentError(index, result.error or "Unknown error")
            return self._absorb_failure(context, batch, error, attempts), 0, len(batch), str(error)

        if len(result.data) != len(batch):
            raise OrchestrationError(
                f"Batch {index} returned {len(result.data)} results for {len(batch)} contacts"
            )

        successful = 0
        for enriched in result.data:
            if enriched.enrichment_status == EnrichmentStatus.SUCCESS:
                successful += 1
                logger.debug(
                    f"Enriched {enriched.first_name} {enriched.last_name} - "
                    f"{enriched.title or 'No title'} at {enriched.company or 'Unknown company'}"
                )
            else:
                logger.debug(f"Failed to enrich {enriched.first_name} {enriched.last_name}")
        failed = len(batch) - successful

        # Earlier attempts that failed still hit the API once each
        api_calls = (attempts - 1) + (result.stats.api_calls_used if result.stats else 1)

        stats = context.stats.model_copy(update={
            "processed": context.stats.processed + len(batch),
            "successful": context.stats.successful + successful,
            "failed": context.stats.failed + failed,
            "api_calls": context.stats.api_calls + api_calls,
            "credits_used": context.stats.credits_used + len(batch),
        })
        new_context = context.model_copy(update={
            "results": [*context.results, *result.data],
            "stats": stats,
            "completed_batches": context.completed_batches + 1,
        })

        logger.info(f"Batch {index} complete: {successful} successful, {failed} failed")
        return new_context, successful, failed, None

    def _absorb_failure(
        self,
        context: RunContext,
        batch: List[Contact],
        error: BatchEnrichmentError,
        attempts: int
    ) -> RunContext:
        """Turn a failed batch into failed contacts so the run can carry on"""
        logger.error(f"{error} ({error.kind})")

        failed_contacts = [EnrichedContact.failed(contact, error.message) for contact in batch]
        stats = context.stats.model_copy(update={
            "processed": context.stats.processed + len(batch),
            "failed": context.stats.failed + len(batch),
            "api_calls": context.stats.api_calls + max(attempts, 1),
        })
        return context.model_copy(update={
            "results": [*context.results, *failed_contacts],
            "stats": stats,
            "completed_batches": context.completed_batches + 1,
            "errors": [*context.errors, str(error)],
        })

    async def _finish(self, context: RunContext) -> RunContext:
        stats = context.stats.model_copy(update={"quality_score": calculate_quality_score(context.results)})

        if context.remaining_contacts:
            context = context.model_copy(update={"state": RunState.PAUSED, "stats": stats})
            self._context = context
            logger.warning(
                f"Enrichment paused - {stats.successful} successful, {stats.failed} failed, "
                f"{len(context.remaining_contacts)} contacts remaining"
            )
            await self._emit(RunPaused(stats=stats))
        else:
            context = context.model_copy(update={
                "state": RunState.COMPLETED,
                "stats": stats,
                "completed_at": datetime.utcnow(),
            })
            self._context = context
            logger.info(
                f"Enrichment completed! {stats.successful} successful, {stats.failed} failed "
                f"(Quality Score: {stats.quality_score}%)"
            )
            await self._emit(RunCompleted(stats=stats))

        return context
