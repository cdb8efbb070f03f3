"""
Batch Orchestrator - fans a template out over a recipient list.

    start_batch -> pending -> running -> completed
                                      -> completed_with_errors   (some failed / cancelled)
                                      -> failed                  (systemic pool failure)

Workers (``min(pool.max_size, concurrency)``) pull the next recipient index
as soon as they finish one, so no surface idles while work remains. Each
item: acquire -> render -> release -> assemble page -> (one-file mode)
write document -> record result at its index. A failed item is retried on
a freshly leased surface; then its failure is recorded with its kind.

Usage:
    orchestrator = BatchOrchestrator(pool)
    handle = await orchestrator.start_batch(template, recipients, "postcard_4x6")
    job = await handle.wait()
    print(job.state, job.completed_count, job.failed_count)
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Set, Union

from ..config.logging_config import get_logger
from ..config.settings import settings
from ..errors import (
    Cancelled,
    EmptyBatch,
    EngineFault,
    ErrorKind,
    ImageTooSmall,
    RenderEngineError,
    SystemicPoolFailure,
    WriteTimeout,
)
from ..models import OutputMode, RecipientRecord, RenderResult, RenderStatus, Template
from ..page_assembly import MergedDocumentWriter, PageAssembler
from ..personalization import PersonalizationRenderer
from ..print_formats import PrintFormat, PrintFormatRegistry, default_registry
from .models import BatchJob, BatchState, DocumentOutput
from .output_store import LocalOutputStore, OutputStore
from .progress import ProgressTracker
from .repository import BatchPersistence, InMemoryBatchStore
from .webhook import batch_event, send_webhook

logger = get_logger(__name__)

# Kinds where another attempt cannot change the outcome
NO_RETRY_KINDS = frozenset({
    ErrorKind.CANCELLED,
    ErrorKind.SYSTEMIC_POOL_FAILURE,
    ErrorKind.EMPTY_BATCH,
    ErrorKind.UNKNOWN_FORMAT,
})


@dataclass
class _BatchRun:
    """Everything the orchestrator tracks for one running batch."""
    job: BatchJob
    template: Template
    recipients: List[RecipientRecord]
    format: PrintFormat
    concurrency: int
    callback_url: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    pending: Deque[int] = field(default_factory=deque)
    merged: Optional[MergedDocumentWriter] = None
    outputs: Dict[int, DocumentOutput] = field(default_factory=dict)
    failure: Optional[BaseException] = None
    task: Optional[asyncio.Task] = None


class BatchHandle:
    """
    Caller's reference to a started batch.

    Keeps working after the orchestrator has forgotten the batch.
    """

    def __init__(self, orchestrator: "BatchOrchestrator", run: _BatchRun):
        self._orchestrator = orchestrator
        self._run = run
        self.batch_id = run.job.id

    @property
    def done(self) -> bool:
        return self._run.done.is_set()

    def status(self) -> BatchJob:
        return self._run.job.snapshot()

    async def cancel(self) -> bool:
        return await self._orchestrator.cancel(self.batch_id)

    async def wait(self, timeout: Optional[float] = None) -> BatchJob:
        """Wait for the batch to reach a terminal state and return its snapshot."""
        await asyncio.wait_for(self._run.done.wait(), timeout)
        return self._run.job.snapshot()

    def __repr__(self) -> str:
        return f"BatchHandle({self.batch_id!r})"


BatchRef = Union[BatchHandle, str]


class BatchOrchestrator:
    """
    Runs batches over a shared surface provider.

    Args:
        pool: RenderSurfacePool or SingleSurfacePool
        renderer: Personalization renderer (default: new one)
        assembler: Page assembler (default: settings-driven)
        registry: Print format registry (default: process-wide)
        store: Batch persistence (default: in-memory)
        output_store: Document destination (default: settings.output_dir)
        progress: Progress tracker for callbacks/history
        retained_batches: Finished batches kept in memory for get_status;
            older ones are forgotten (the store keeps their record)
    """

    def __init__(
        self,
        pool,
        renderer: Optional[PersonalizationRenderer] = None,
        assembler: Optional[PageAssembler] = None,
        registry: Optional[PrintFormatRegistry] = None,
        store: Optional[BatchPersistence] = None,
        output_store: Optional[OutputStore] = None,
        progress: Optional[ProgressTracker] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        acquire_timeout: Optional[float] = None,
        render_timeout: Optional[float] = None,
        write_timeout: Optional[float] = None,
        zip_outputs: Optional[bool] = None,
        retained_batches: Optional[int] = None,
    ):
        self.pool = pool
        self.renderer = renderer or PersonalizationRenderer()
        self.assembler = assembler or PageAssembler()
        self.registry = registry or default_registry()
        self.store = store or InMemoryBatchStore()
        self.output_store = output_store or LocalOutputStore()
        self.progress = progress or ProgressTracker()

        self.retry_attempts = settings.retry_attempts if retry_attempts is None else retry_attempts
        self.retry_backoff_seconds = (
            settings.retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds
        )
        self.acquire_timeout = settings.acquire_timeout if acquire_timeout is None else acquire_timeout
        self.render_timeout = settings.render_timeout if render_timeout is None else render_timeout
        self.write_timeout = settings.write_timeout if write_timeout is None else write_timeout
        self.zip_outputs = settings.zip_outputs if zip_outputs is None else zip_outputs

        self.retained_batches = (
            settings.retained_batches if retained_batches is None else retained_batches
        )

        self._runs: Dict[str, _BatchRun] = {}
        self._background: Set[asyncio.Task] = set()

    # ========== Public API ==========

    async def start_batch(
        self,
        template: Union[Template, Mapping[str, Any]],
        recipients: Sequence[Union[RecipientRecord, Mapping[str, Any]]],
        format_name: str,
        mode: Union[OutputMode, str] = OutputMode.ONE_FILE_PER_RECIPIENT,
        concurrency: Optional[int] = None,
        callback_url: Optional[str] = None,
    ) -> BatchHandle:
        """
        Validate, persist and launch a batch.

        Raises:
            EmptyBatch: No recipients
            UnknownFormat: format_name is not registered
        """
        records = [RecipientRecord.coerce(r) for r in recipients]
        if not records:
            raise EmptyBatch("Batch has no recipients")
        print_format = self.registry.lookup(format_name)
        mode = OutputMode(mode)
        if not isinstance(template, Template):
            template = Template.from_dict(template)
        concurrency = settings.batch_concurrency if concurrency is None else concurrency
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        batch_id = await asyncio.to_thread(
            self.store.create_batch_job, template.id, len(records), print_format.name, mode.value
        )
        job = BatchJob(
            id=batch_id,
            template_id=template.id,
            format_name=print_format.name,
            mode=mode,
            total_recipients=len(records),
        )
        run = _BatchRun(
            job=job,
            template=template,
            recipients=records,
            format=print_format,
            concurrency=concurrency,
            callback_url=callback_url,
            pending=deque(range(len(records))),
        )
        self._runs[batch_id] = run
        run.task = asyncio.create_task(self._run(run), name=f"batch-{batch_id}")

        logger.info(
            f"Started batch {batch_id}: {len(records)} recipients, "
            f"template={template.id}, format={print_format.name}, mode={mode.value}"
        )
        return BatchHandle(self, run)

    async def run_batch(self, *args, **kwargs) -> BatchJob:
        """start_batch + wait."""
        handle = await self.start_batch(*args, **kwargs)
        return await handle.wait()

    def get_status(self, batch: BatchRef) -> Optional[BatchJob]:
        """Snapshot of the batch, or None if unknown."""
        run = self._runs.get(self._batch_id(batch))
        return run.job.snapshot() if run else None

    async def cancel(self, batch: BatchRef) -> bool:
        """
        Stop scheduling new items. In-flight items finish, no retry starts,
        never-scheduled items are recorded as Cancelled.

        The batch is reported as cancelled only if some item never ran; a
        cancel that arrives after the last item was scheduled changes nothing.
        """
        run = self._runs.get(self._batch_id(batch))
        if run is None or run.done.is_set():
            return False
        if not run.cancel_event.is_set():
            logger.info(f"Cancelling batch {run.job.id} ({len(run.pending)} items not yet scheduled)")
            run.cancel_event.set()
        return True

    def forget(self, batch: BatchRef) -> bool:
        """
        Drop a finished batch from memory. Its persisted record is kept.
        Running batches cannot be forgotten.
        """
        batch_id = self._batch_id(batch)
        run = self._runs.get(batch_id)
        if run is None or not run.done.is_set():
            return False
        del self._runs[batch_id]
        return True

    async def shutdown(self) -> None:
        """Cancel running batches and wait for their tasks and webhooks."""
        tasks = list(self._background)
        for run in self._runs.values():
            if run.task is not None and not run.task.done():
                run.cancel_event.set()
                tasks.append(run.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ========== Batch run ==========

    async def _run(self, run: _BatchRun) -> None:
        job = run.job
        try:
            async with run.lock:
                job.state = BatchState.RUNNING
                job.started_at = job.updated_at = datetime.now()
            await asyncio.to_thread(self.store.update_batch_progress, job.id, 0, 0, BatchState.RUNNING)

            if job.mode == OutputMode.MERGED:
                run.merged = self.output_store.open_merged(job.id, self.assembler)

            await self._run_workers(run)

            if job.mode == OutputMode.MERGED:
                await self._write_merged(run)
            elif self.zip_outputs and not run.pending:
                await self._write_archive(run)
        except SystemicPoolFailure as e:
            logger.error(f"Batch {job.id} failed: {e}")
            run.failure = e
        except asyncio.CancelledError:
            run.cancel_event.set()
            await self._finalize(run)
            raise
        except Exception as e:
            logger.exception(f"Batch {job.id} crashed")
            run.failure = e

        await self._finalize(run)

    async def _run_workers(self, run: _BatchRun) -> None:
        count = min(self.pool.max_size, run.concurrency, len(run.pending))
        workers = [
            asyncio.create_task(self._worker(run), name=f"batch-{run.job.id}-worker-{n}")
            for n in range(count)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    async def _worker(self, run: _BatchRun) -> None:
        while run.pending and not run.cancel_event.is_set():
            index = run.pending.popleft()
            try:
                result = await self._process_item(run, index)
            except SystemicPoolFailure:
                raise
            except Exception as e:
                logger.exception(f"Batch {run.job.id}: recipient {index} failed unexpectedly")
                result = _failed_result(index, EngineFault(str(e)))
            await self._record(run, index, result)

    async def _process_item(self, run: _BatchRun, index: int) -> RenderResult:
        max_attempts = 1 + max(0, self.retry_attempts)
        avoid_surface_id = None
        attempts = 0

        while True:
            attempts += 1
            result = await self._attempt(run, index, avoid_surface_id)
            if (
                result.success
                or attempts >= max_attempts
                or result.error_kind in NO_RETRY_KINDS
                or run.cancel_event.is_set()
            ):
                return replace(result, attempts=attempts)

            logger.info(
                f"Batch {run.job.id}: retrying recipient {index} after "
                f"{result.error_kind.value} on {result.surface_id}"
            )
            avoid_surface_id = result.surface_id
            if self.retry_backoff_seconds > 0:
                await asyncio.sleep(self.retry_backoff_seconds)

    async def _attempt(self, run: _BatchRun, index: int, avoid_surface_id: Optional[str]) -> RenderResult:
        try:
            lease = await self.pool.acquire(
                timeout=self.acquire_timeout,
                avoid_surface_id=avoid_surface_id,
                recipient_index=index,
            )
        except SystemicPoolFailure:
            raise
        except RenderEngineError as e:
            return _failed_result(index, e)

        try:
            result = await self.renderer.render(
                lease, run.template, run.recipients[index], index, timeout=self.render_timeout
            )
        except BaseException:
            lease.mark_unhealthy("Render interrupted")
            await self.pool.release(lease)
            raise
        # Assembly does not need the surface
        await self.pool.release(lease)

        if not result.success:
            return result

        try:
            page = await asyncio.to_thread(self.assembler.assemble_page, result.image, run.format, index)
        except ImageTooSmall as e:
            return _failed_result(index, e, result)
        except (OSError, ValueError) as e:
            return _failed_result(index, EngineFault(f"Unreadable render output: {e}"), result)

        if run.job.mode == OutputMode.MERGED:
            try:
                await asyncio.to_thread(run.merged.add, page)
            except OSError as e:
                return _failed_result(index, EngineFault(f"Page not added to merged document: {e}"), result)
        else:
            documents = await asyncio.to_thread(
                self.assembler.assemble_document, [page], OutputMode.ONE_FILE_PER_RECIPIENT
            )
            try:
                run.outputs[index] = await self.output_store.write_document(
                    run.job.id, documents[0], timeout=self.write_timeout
                )
            except WriteTimeout as e:
                return _failed_result(index, e, result)

        return replace(result, image=None)

    async def _record(self, run: _BatchRun, index: int, result: RenderResult) -> None:
        job = run.job
        async with run.lock:
            if job.results[index] is not None:
                logger.warning(f"Batch {job.id}: ignoring duplicate result for recipient {index}")
                return
            job.results[index] = result
            if result.success:
                job.completed_count += 1
            else:
                job.failed_count += 1
            job.updated_at = datetime.now()

            if run.merged is not None and not result.success:
                await asyncio.to_thread(run.merged.skip, index)
            await asyncio.to_thread(self.store.record_recipient_result, job.id, index, result)
            await asyncio.to_thread(
                self.store.update_batch_progress,
                job.id, job.completed_count, job.failed_count, job.state,
            )
            await self.progress.update(
                job.id,
                job.state.value,
                job.completed_count,
                job.failed_count,
                job.total_recipients,
                message=f"Recipient {index} {result.status.value}",
                details={"recipient_index": index, "error_kind": result.error_kind.value if result.error_kind else None},
            )

    async def _write_merged(self, run: _BatchRun) -> None:
        try:
            output = await self.output_store.finish_merged(run.job.id, run.merged, timeout=self.write_timeout)
        except WriteTimeout as e:
            logger.error(f"Batch {run.job.id}: merged document not written: {e}")
            async with run.lock:
                run.job.error_message = str(e)
            return
        if output is None:
            logger.warning(f"Batch {run.job.id}: no successful pages, merged document skipped")
            return
        async with run.lock:
            run.job.documents.append(output)

    async def _write_archive(self, run: _BatchRun) -> None:
        outputs = [run.outputs[index] for index in sorted(run.outputs)]
        try:
            archive_path = await self.output_store.write_archive(run.job.id, outputs, timeout=self.write_timeout)
        except WriteTimeout as e:
            logger.error(f"Batch {run.job.id}: archive not written: {e}")
            async with run.lock:
                run.job.error_message = str(e)
            return
        async with run.lock:
            run.job.archive_path = archive_path

    async def _finalize(self, run: _BatchRun) -> None:
        job = run.job
        try:
            if run.merged is not None and run.merged.is_open:
                await asyncio.to_thread(run.merged.discard)
            async with run.lock:
                if run.failure is not None:
                    fill_error: RenderEngineError = (
                        run.failure
                        if isinstance(run.failure, SystemicPoolFailure)
                        else SystemicPoolFailure(f"Batch aborted: {run.failure}")
                    )
                else:
                    fill_error = Cancelled("Batch cancelled before this recipient was rendered")

                filled = []
                for index, slot in enumerate(job.results):
                    if slot is None:
                        job.results[index] = _failed_result(index, fill_error)
                        job.failed_count += 1
                        filled.append(index)
                run.pending.clear()

                if job.mode == OutputMode.ONE_FILE_PER_RECIPIENT:
                    job.documents = [run.outputs[index] for index in sorted(run.outputs)]

                if run.failure is not None:
                    job.state = BatchState.FAILED
                    job.error_message = str(run.failure)
                elif run.cancel_event.is_set() and filled:
                    job.state = BatchState.COMPLETED_WITH_ERRORS
                    job.cancelled = True
                elif job.failed_count == 0:
                    job.state = BatchState.COMPLETED
                else:
                    job.state = BatchState.COMPLETED_WITH_ERRORS
                job.finished_at = job.updated_at = datetime.now()

            for index in filled:
                await asyncio.to_thread(self.store.record_recipient_result, job.id, index, job.results[index])
            await asyncio.to_thread(
                self.store.update_batch_progress,
                job.id, job.completed_count, job.failed_count, job.state, job.error_message,
            )
            await self.progress.update(
                job.id,
                job.state.value,
                job.completed_count,
                job.failed_count,
                job.total_recipients,
                message=f"Batch {job.state.value}",
            )
        finally:
            run.done.set()

        logger.info(
            f"Batch {job.id} {job.state.value}: {job.completed_count} succeeded, "
            f"{job.failed_count} failed of {job.total_recipients}"
            + (" (cancelled)" if job.cancelled else "")
        )

        self._evict_finished()

        if run.callback_url:
            task = asyncio.create_task(self._notify(run.callback_url, job.snapshot()))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def _evict_finished(self) -> None:
        finished = [batch_id for batch_id, run in self._runs.items() if run.done.is_set()]
        for batch_id in finished[:max(0, len(finished) - self.retained_batches)]:
            del self._runs[batch_id]

    async def _notify(self, url: str, snapshot: BatchJob) -> bool:
        delivered = await send_webhook(url, batch_event(snapshot))
        if not delivered:
            logger.warning(f"Completion webhook for batch {snapshot.id} was not delivered")
        return delivered

    @staticmethod
    def _batch_id(batch: BatchRef) -> str:
        return batch.batch_id if isinstance(batch, BatchHandle) else batch


def _failed_result(
    index: int,
    error: RenderEngineError,
    render: Optional[RenderResult] = None,
) -> RenderResult:
    return RenderResult(
        recipient_index=index,
        status=RenderStatus.FAILED,
        error_kind=error.kind,
        error_message=str(error),
        timing_ms=render.timing_ms if render else 0.0,
        surface_id=render.surface_id if render else None,
        generation=render.generation if render else None,
    )
