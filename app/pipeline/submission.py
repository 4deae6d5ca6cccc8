"""
Priority submission queue in front of the invoicing provider.

Ordering is (tier, arrival): interactive work always dispatches before batch
work, FIFO within a tier. A fixed pool of dispatcher tasks caps the number of
provider calls in flight. Retryable failures go back into the queue after an
exponential backoff, carrying the same draft and therefore the same folio;
the queue never allocates folios. Before each dispatch the owning batch is
read from the state store, and submissions of a canceled batch are dropped
without being sent.
"""

import asyncio
import itertools
from typing import Awaitable, Callable, Optional

import structlog
from tenacity import RetryCallState, wait_exponential

from app.errors import BatchNotFoundError, ProviderError, StateStoreError
from app.integrations.provider import ProviderClient
from app.models.enums import BatchStatus, ItemStatus, PriorityTier, SubmissionResult
from app.observability.metrics import (
    submission_queue_depth,
    submission_retries_total,
    submissions_in_flight,
    submissions_total,
)
from app.schemas.invoices import ProviderInvoice, QueuedSubmission, SubmissionOutcome
from app.state.store import BatchStateStore

logger = structlog.get_logger(__name__)


class SubmissionQueue:
    def __init__(
        self,
        provider: ProviderClient,
        store: Optional[BatchStateStore] = None,
        max_in_flight: int = 5,
        max_attempts: int = 3,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.store = store
        self.max_in_flight = max_in_flight
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._sleep = sleep
        self._wait = wait_exponential(multiplier=retry_base_seconds, max=retry_max_seconds)

        self._queue: Optional[asyncio.PriorityQueue] = None
        self._seq = itertools.count()
        self._pending: dict[str, QueuedSubmission] = {}
        self._futures: dict[str, asyncio.Future] = {}
        self._workers: list[asyncio.Task] = []
        self._retry_tasks: set[asyncio.Task] = set()

        self._processed = 0
        self._failed = 0
        self._retried = 0
        self._canceled = 0
        self._peak_depth = 0
        self._in_flight = 0

    # ── Lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        """Spawn the dispatcher tasks. Must run inside the event loop."""
        if self._workers:
            return
        self._queue = asyncio.PriorityQueue()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"submission-worker-{n}")
            for n in range(self.max_in_flight)
        ]
        logger.info("submission_queue_started", max_in_flight=self.max_in_flight)

    async def close(self) -> None:
        """Stop dispatching. Unresolved submissions end with a canceled future."""
        tasks = [*self._workers, *self._retry_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for future in self._futures.values():
            if not future.done():
                future.cancel()
        self._workers = []
        self._retry_tasks.clear()
        self._futures.clear()
        self._pending.clear()
        self._queue = None
        submission_queue_depth.set(0)
        logger.info("submission_queue_stopped", **self.stats())

    # ── Public API ───────────────────────────────────────────

    def enqueue(
        self, submission: QueuedSubmission, priority: Optional[PriorityTier] = None
    ) -> asyncio.Future:
        """Queue an allocated draft. The future resolves to a SubmissionOutcome."""
        self.start()
        if priority is not None:
            submission = submission.model_copy(update={"priority": priority})
        if submission.submission_id in self._futures:
            raise ValueError(f"Submission {submission.submission_id} is already queued")

        future = asyncio.get_running_loop().create_future()
        self._futures[submission.submission_id] = future
        self._put(submission)
        logger.debug(
            "submission_enqueued",
            submission_id=submission.submission_id,
            tier=submission.priority.value,
            folio=submission.draft.folio,
        )
        return future

    def is_tracking(self, submission_id: str) -> bool:
        """True while `submission_id` is queued, in flight or waiting to retry here."""
        return submission_id in self._futures

    def backoff(self, attempt: int) -> float:
        """Delay before attempt `attempt + 1`: base * 2**(attempt - 1), capped."""
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = attempt
        return float(self._wait(state))

    def stats(self) -> dict:
        return {
            "processed": self._processed,
            "failed": self._failed,
            "retried": self._retried,
            "canceled": self._canceled,
            "in_flight": self._in_flight,
            "depth": self._queue.qsize() if self._queue else 0,
            "peak_depth": self._peak_depth,
        }

    # ── Dispatch ─────────────────────────────────────────────

    def _put(self, submission: QueuedSubmission) -> None:
        self._pending[submission.submission_id] = submission
        self._queue.put_nowait((submission.priority.rank, next(self._seq), submission.submission_id))
        depth = self._queue.qsize()
        self._peak_depth = max(self._peak_depth, depth)
        submission_queue_depth.set(depth)

    async def _worker(self, n: int) -> None:
        while True:
            _, _, submission_id = await self._queue.get()
            submission_queue_depth.set(self._queue.qsize())
            submission = self._pending.pop(submission_id)
            try:
                await self._dispatch(submission)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    "submission_dispatch_crashed",
                    submission_id=submission_id,
                    worker=n,
                )
                self._finish(submission, SubmissionResult.FAILED, error=f"{type(e).__name__}: {e}")
            finally:
                self._queue.task_done()

    async def _dispatch(self, submission: QueuedSubmission) -> None:
        if submission.belongs_to_batch:
            canceled_reason = await self._batch_unavailable(submission)
            if canceled_reason:
                await self._record_item(
                    submission, status=ItemStatus.SUBMIT_FAILED, error=canceled_reason
                )
                self._finish(submission, SubmissionResult.CANCELED, error=canceled_reason)
                return

        submission = submission.model_copy(update={"attempts": submission.attempts + 1})
        self._in_flight += 1
        submissions_in_flight.inc()
        try:
            invoice = await self.provider.submit(submission.draft)
        except ProviderError as e:
            if e.retryable and submission.attempts < self.max_attempts:
                await self._retry(submission, e)
            else:
                await self._record_item(
                    submission, status=ItemStatus.SUBMIT_FAILED, error=e.message
                )
                self._finish(submission, SubmissionResult.FAILED, error=e.message)
            return
        finally:
            self._in_flight -= 1
            submissions_in_flight.dec()

        await self._record_item(
            submission,
            status=ItemStatus.SUBMITTED,
            invoice_ref=invoice.provider_invoice_id,
            error=None,
        )
        self._finish(submission, SubmissionResult.SUBMITTED, invoice=invoice)

    async def _retry(self, submission: QueuedSubmission, error: ProviderError) -> None:
        delay = self.backoff(submission.attempts)
        self._retried += 1
        submission_retries_total.inc()
        logger.warning(
            "submission_retry_scheduled",
            submission_id=submission.submission_id,
            folio=submission.draft.folio,
            attempt=submission.attempts,
            delay_seconds=delay,
            error=error.message,
        )
        await self._record_item(submission, error=error.message)

        task = asyncio.create_task(self._requeue_after(submission, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _requeue_after(self, submission: QueuedSubmission, delay: float) -> None:
        await self._sleep(delay)
        self._put(submission)

    async def _batch_unavailable(self, submission: QueuedSubmission) -> Optional[str]:
        if self.store is None:
            return None
        record = await self.store.get(submission.owner_id, submission.batch_id)
        if record is None:
            return "batch no longer available"
        if record.get("status") == BatchStatus.CANCELED.value:
            return "batch canceled"
        return None

    async def _record_item(self, submission: QueuedSubmission, **fields) -> None:
        if self.store is None or not submission.belongs_to_batch:
            return
        partial = {
            key: value.value if isinstance(value, ItemStatus) else value
            for key, value in fields.items()
        }
        partial["attempts"] = submission.attempts
        try:
            await self.store.update(
                submission.owner_id,
                submission.batch_id,
                {"items": {submission.item_id: partial}},
            )
        except (BatchNotFoundError, StateStoreError) as e:
            logger.error(
                "submission_state_write_failed",
                submission_id=submission.submission_id,
                error=e.message,
            )

    def _finish(
        self,
        submission: QueuedSubmission,
        result: SubmissionResult,
        invoice: Optional[ProviderInvoice] = None,
        error: Optional[str] = None,
    ) -> None:
        if result is SubmissionResult.SUBMITTED:
            self._processed += 1
        elif result is SubmissionResult.CANCELED:
            self._canceled += 1
        else:
            self._failed += 1
        submissions_total.labels(tier=submission.priority.value, result=result.value).inc()

        outcome = SubmissionOutcome(
            submission_id=submission.submission_id,
            result=result,
            attempts=submission.attempts,
            folio=submission.draft.folio,
            invoice=invoice,
            error=error,
        )
        log = logger.info if result is SubmissionResult.SUBMITTED else logger.warning
        log(
            "submission_finished",
            submission_id=submission.submission_id,
            result=result.value,
            folio=submission.draft.folio,
            attempts=submission.attempts,
            error=error,
        )

        future = self._futures.pop(submission.submission_id, None)
        if future is not None and not future.done():
            future.set_result(outcome)
