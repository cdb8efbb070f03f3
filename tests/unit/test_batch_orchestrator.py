"""Tests for BatchOrchestrator."""

import asyncio
import zipfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from dm_render.batch import BatchState, ProgressTracker
from dm_render.errors import EmptyBatch, ErrorKind, UnknownFormat, WriteTimeout
from dm_render.models import OutputMode
from dm_render.page_assembly import MergedDocumentWriter
from dm_render.render_engine import RenderSurfacePool, SingleSurfacePool


def assert_counts_consistent(job):
    assert job.completed_count + job.failed_count == job.total_recipients
    assert all(result is not None for result in job.results)
    assert [r.recipient_index for r in job.results] == list(range(job.total_recipients))
    assert job.completed_count == sum(1 for r in job.results if r.success)


class TestValidation:

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, pool, template, make_orchestrator):
        orchestrator = make_orchestrator(pool)
        with pytest.raises(EmptyBatch):
            await orchestrator.start_batch(template, [], "test_card")

    @pytest.mark.asyncio
    async def test_unknown_format_rejected(self, pool, template, make_orchestrator, make_recipients):
        orchestrator = make_orchestrator(pool)
        with pytest.raises(UnknownFormat):
            await orchestrator.start_batch(template, make_recipients(2), "postcard_99x99")

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self, pool, template, make_orchestrator, make_recipients):
        orchestrator = make_orchestrator(pool)
        with pytest.raises(ValueError):
            await orchestrator.start_batch(template, make_recipients(2), "test_card", concurrency=-1)

    @pytest.mark.asyncio
    async def test_zero_concurrency_rejected(self, pool, template, make_orchestrator, make_recipients):
        orchestrator = make_orchestrator(pool)
        with pytest.raises(ValueError):
            await orchestrator.run_batch(template, make_recipients(2), "test_card", concurrency=0)


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_one_file_per_recipient(self, pool, template, make_orchestrator, make_recipients, tmp_path):
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, make_recipients(5), "test_card", concurrency=2)

        assert job.state == BatchState.COMPLETED
        assert job.completed_count == 5
        assert job.failed_count == 0
        assert not job.cancelled
        assert_counts_consistent(job)
        assert [Path(d.path).name for d in job.documents] == [f"dm-{i}.pdf" for i in range(5)]
        for document in job.documents:
            assert Path(document.path).read_bytes().startswith(b"%PDF")
        assert all(r.image is None for r in job.results)
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_merged_output_keeps_input_order(
        self, fake_engine, template, make_orchestrator, make_recipients
    ):
        fake_engine.delays.update({"R0": 0.08, "R1": 0.0, "R2": 0.04, "R3": 0.0})
        pool = RenderSurfacePool(fake_engine, max_size=4)
        progress = ProgressTracker()
        orchestrator = make_orchestrator(pool, progress=progress)

        handle = await orchestrator.start_batch(
            template, make_recipients(4), "test_card", mode=OutputMode.MERGED, concurrency=4
        )
        job = await handle.wait()

        completion_order = [
            update["details"]["recipient_index"]
            for update in progress.get_history(job.id)
            if "recipient_index" in update["details"]
        ]
        assert completion_order != sorted(completion_order)
        assert_counts_consistent(job)
        assert len(job.documents) == 1
        merged = job.documents[0]
        assert Path(merged.path).name == f"batch-{job.id}.pdf"
        assert merged.recipient_indices == (0, 1, 2, 3)
        assert merged.page_count == 4
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_merged_pages_not_held_in_memory(
        self, pool, template, make_orchestrator, make_recipients, tmp_path
    ):
        waiting = []
        original_add = MergedDocumentWriter.add

        def recording_add(writer, page):
            original_add(writer, page)
            waiting.append(writer.spooled_count)

        orchestrator = make_orchestrator(pool)
        with patch.object(MergedDocumentWriter, "add", recording_add):
            job = await orchestrator.run_batch(
                template, make_recipients(50), "test_card", mode=OutputMode.MERGED, concurrency=2
            )

        assert len(waiting) == 50
        assert max(waiting) < 10
        merged = job.documents[0]
        assert merged.recipient_indices == tuple(range(50))
        assert merged.page_count == 50
        assert merged.size_bytes == Path(merged.path).stat().st_size
        assert not (tmp_path / "out" / job.id / ".spool").exists()
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_merged_skips_failed_recipient(self, pool, template, make_orchestrator, make_recipients):
        recipients = make_recipients(4)
        recipients[1] = {"coupon": "C1"}
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, recipients, "test_card", mode=OutputMode.MERGED)

        assert job.state == BatchState.COMPLETED_WITH_ERRORS
        assert job.documents[0].recipient_indices == (0, 2, 3)
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_merged_without_successes_writes_nothing(
        self, engine_cls, template, make_orchestrator, make_recipients, tmp_path
    ):
        pool = RenderSurfacePool(engine_cls(capture_scale=0.3), max_size=2)
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, make_recipients(3), "test_card", mode=OutputMode.MERGED)

        assert job.documents == []
        assert not (tmp_path / "out" / job.id / f"batch-{job.id}.pdf").exists()
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_lease_cap_respects_concurrency(
        self, engine_cls, template, make_orchestrator, make_recipients
    ):
        engine = engine_cls(default_delay=0.01)
        pool = RenderSurfacePool(engine, max_size=4)
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, make_recipients(10), "test_card", concurrency=2)

        assert job.completed_count == 10
        assert pool.stats().max_leased_observed <= 2
        assert engine.max_in_flight <= 2
        assert len(engine.pages) <= 2
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_surfaces_reused_across_recipients(
        self, pool, fake_engine, template, make_orchestrator, make_recipients
    ):
        orchestrator = make_orchestrator(pool)

        await orchestrator.run_batch(template, make_recipients(8), "test_card", concurrency=2)

        assert fake_engine.start_calls == 1
        assert len(fake_engine.pages) == 2
        assert fake_engine.harness_loads == 2
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_zip_archive(self, pool, template, make_orchestrator, make_recipients):
        orchestrator = make_orchestrator(pool, zip_outputs=True)

        job = await orchestrator.run_batch(template, make_recipients(3), "test_card")

        assert job.archive_path.endswith(f"batch-{job.id}.zip")
        with zipfile.ZipFile(job.archive_path) as archive:
            assert sorted(archive.namelist()) == ["dm-0.pdf", "dm-1.pdf", "dm-2.pdf"]
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_single_surface_provider(self, engine_cls, template, make_orchestrator, make_recipients):
        engines = []

        def factory():
            engine = engine_cls()
            engines.append(engine)
            return engine

        provider = SingleSurfacePool(factory)
        orchestrator = make_orchestrator(provider)

        job = await orchestrator.run_batch(template, make_recipients(4), "test_card", concurrency=5)

        assert job.state == BatchState.COMPLETED
        assert len(engines) == 1
        assert len(engines[0].pages) == 1
        await provider.shutdown()


class TestFailures:

    @pytest.mark.asyncio
    async def test_transient_crash_is_retried(
        self, pool, fake_engine, template, make_orchestrator, make_recipients
    ):
        fake_engine.crashes["R1"] = 1
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, make_recipients(3), "test_card", concurrency=1)

        assert job.state == BatchState.COMPLETED
        assert job.results[1].attempts == 2
        assert job.results[0].attempts == 1
        assert pool.stats().destroyed_total == 1
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_persistent_crash_recorded_after_one_retry(
        self, pool, fake_engine, template, make_orchestrator, make_recipients
    ):
        fake_engine.crashes["R2"] = 10
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, make_recipients(4), "test_card", concurrency=2)

        assert job.state == BatchState.COMPLETED_WITH_ERRORS
        assert job.failed_count == 1
        failed = job.results[2]
        assert failed.error_kind == ErrorKind.ENGINE_FAULT
        assert failed.attempts == 2
        assert fake_engine.crashes["R2"] == 8
        assert_counts_consistent(job)
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_missing_required_field_isolated(self, pool, template, make_orchestrator, make_recipients):
        recipients = make_recipients(3)
        recipients[1] = {"coupon": "C1"}
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, recipients, "test_card")

        assert job.results[1].error_kind == ErrorKind.MISSING_REQUIRED_FIELD
        assert job.completed_count == 2
        assert pool.stats().destroyed_total == 0
        assert_counts_consistent(job)
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_render_timeout_recorded(
        self, pool, fake_engine, template, make_orchestrator, make_recipients
    ):
        fake_engine.delays["R0"] = 10
        orchestrator = make_orchestrator(pool, render_timeout=0.05)

        job = await orchestrator.run_batch(template, make_recipients(2), "test_card")

        assert job.results[0].error_kind == ErrorKind.RENDER_TIMEOUT
        assert job.results[1].success
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_image_too_small(self, engine_cls, template, make_orchestrator, make_recipients):
        pool = RenderSurfacePool(engine_cls(capture_scale=0.3), max_size=2)
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, make_recipients(2), "test_card")

        assert {r.error_kind for r in job.results} == {ErrorKind.IMAGE_TOO_SMALL}
        assert job.state == BatchState.COMPLETED_WITH_ERRORS
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_write_timeout(self, pool, template, make_orchestrator, make_recipients):
        output_store = AsyncMock()
        output_store.write_document.side_effect = WriteTimeout(0.1, "dm-0.pdf")
        orchestrator = make_orchestrator(pool, output_store=output_store)

        job = await orchestrator.run_batch(template, make_recipients(2), "test_card")

        assert {r.error_kind for r in job.results} == {ErrorKind.WRITE_TIMEOUT}
        assert output_store.write_document.await_count == 4
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_systemic_pool_failure_fails_batch(
        self, engine_cls, template, make_orchestrator, make_recipients
    ):
        pool = RenderSurfacePool(engine_cls(fail_start=True), max_size=2)
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, make_recipients(6), "test_card")

        assert job.state == BatchState.FAILED
        assert job.error_message
        assert job.completed_count == 0
        assert {r.error_kind for r in job.results} == {ErrorKind.SYSTEMIC_POOL_FAILURE}
        assert_counts_consistent(job)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_mid_batch(self, engine_cls, template, make_orchestrator, make_recipients):
        engine = engine_cls(default_delay=0.01)
        pool = RenderSurfacePool(engine, max_size=5)
        orchestrator = make_orchestrator(pool)

        handle = await orchestrator.start_batch(template, make_recipients(100), "test_card", concurrency=5)
        await asyncio.sleep(0.05)
        assert await handle.cancel()
        job = await handle.wait(timeout=5)

        assert job.state == BatchState.COMPLETED_WITH_ERRORS
        assert job.cancelled
        assert_counts_consistent(job)
        cancelled = [r for r in job.results if r.error_kind == ErrorKind.CANCELLED]
        assert cancelled
        assert job.completed_count + len(cancelled) == 100
        assert pool.stats().leased == 0
        assert not await handle.cancel()
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, pool, template, make_orchestrator, make_recipients):
        orchestrator = make_orchestrator(pool)

        handle = await orchestrator.start_batch(template, make_recipients(5), "test_card")
        await orchestrator.cancel(handle)
        job = await handle.wait(timeout=5)

        assert job.cancelled
        assert job.failed_count == 5
        assert {r.error_kind for r in job.results} == {ErrorKind.CANCELLED}

    @pytest.mark.asyncio
    async def test_cancel_after_everything_scheduled(
        self, engine_cls, template, make_orchestrator, make_recipients
    ):
        pool = RenderSurfacePool(engine_cls(default_delay=0.1), max_size=2)
        orchestrator = make_orchestrator(pool)

        handle = await orchestrator.start_batch(template, make_recipients(2), "test_card", concurrency=2)
        await asyncio.sleep(0.03)
        assert await handle.cancel()
        job = await handle.wait(timeout=5)

        assert job.state == BatchState.COMPLETED
        assert not job.cancelled
        assert job.completed_count == 2
        assert job.failed_count == 0
        await pool.shutdown()


class TestStatusAndNotifications:

    @pytest.mark.asyncio
    async def test_status_snapshots(self, engine_cls, template, make_orchestrator, make_recipients):
        pool = RenderSurfacePool(engine_cls(default_delay=0.02), max_size=2)
        orchestrator = make_orchestrator(pool)

        handle = await orchestrator.start_batch(template, make_recipients(6), "test_card")
        await asyncio.sleep(0.03)
        running = orchestrator.get_status(handle)

        assert running.state in (BatchState.PENDING, BatchState.RUNNING)
        assert running.completed_count + running.failed_count <= running.total_recipients

        job = await handle.wait(timeout=5)
        assert job.state == BatchState.COMPLETED
        assert orchestrator.get_status("batch_missing") is None
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_progress_persisted(self, pool, template, make_orchestrator, make_recipients):
        orchestrator = make_orchestrator(pool)

        job = await orchestrator.run_batch(template, make_recipients(3), "test_card")

        stored = orchestrator.store.get_batch_job(job.id)
        assert stored["state"] == "completed"
        assert stored["completed_count"] == 3
        assert len(orchestrator.store.list_recipient_results(job.id)) == 3
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_progress_callback(self, pool, template, make_orchestrator, make_recipients):
        updates = []
        progress = ProgressTracker()
        orchestrator = make_orchestrator(pool, progress=progress)

        handle = await orchestrator.start_batch(template, make_recipients(3), "test_card")
        progress.register_callback(handle.batch_id, updates.append)
        await handle.wait()

        assert len(updates) == 4
        assert updates[-1].state == "completed"
        assert updates[-1].percentage == 100.0
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_completion_webhook(self, pool, template, make_orchestrator, make_recipients):
        orchestrator = make_orchestrator(pool)

        with patch("dm_render.batch.orchestrator.send_webhook", new=AsyncMock(return_value=True)) as webhook:
            job = await orchestrator.run_batch(
                template, make_recipients(2), "test_card", callback_url="https://hooks.example.com/dm"
            )
            await orchestrator.shutdown()

        webhook.assert_awaited_once()
        url, payload = webhook.await_args.args
        assert url == "https://hooks.example.com/dm"
        assert payload["event"] == "batch.completed"
        assert payload["batch"]["id"] == job.id
        await pool.shutdown()


class TestRetention:

    @pytest.mark.asyncio
    async def test_old_finished_batches_forgotten(self, pool, template, make_orchestrator, make_recipients):
        orchestrator = make_orchestrator(pool, retained_batches=1)

        first = await orchestrator.start_batch(template, make_recipients(2), "test_card")
        await first.wait(timeout=5)
        second = await orchestrator.start_batch(template, make_recipients(2), "test_card")
        await second.wait(timeout=5)

        assert orchestrator.get_status(first) is None
        assert orchestrator.get_status(second).state == BatchState.COMPLETED
        # The handle and the store still know the forgotten batch
        assert first.status().state == BatchState.COMPLETED
        assert (await first.wait()).completed_count == 2
        assert orchestrator.store.get_batch_job(first.batch_id)["state"] == "completed"
        assert not await first.cancel()
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_forget(self, engine_cls, template, make_orchestrator, make_recipients):
        pool = RenderSurfacePool(engine_cls(default_delay=0.05), max_size=2)
        orchestrator = make_orchestrator(pool)

        handle = await orchestrator.start_batch(template, make_recipients(2), "test_card")
        assert not orchestrator.forget(handle)

        await handle.wait(timeout=5)
        assert orchestrator.forget(handle)
        assert orchestrator.get_status(handle) is None
        assert not orchestrator.forget(handle)
        assert not orchestrator.forget("batch_missing")
        await pool.shutdown()
