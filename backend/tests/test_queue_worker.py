"""
Tests for the per-queue polling workers.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.invoice_pipeline.pipeline_config import QueueName
from services.invoice_pipeline.queue_worker import QueueWorker, QueueWorkerPool


MOCK_SUMMARY = {
    "queue": "validation",
    "processed": 1,
    "successful": 1,
    "failed": 0,
    "skipped": 0,
    "results": [{"job_id": "j1", "outcome": "approved"}],
}


def make_processor(side_effect=None):
    processor = MagicMock()
    processor.run_cycle = AsyncMock(return_value=MOCK_SUMMARY, side_effect=side_effect)
    return processor


async def wait_for_calls(mock, count, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while mock.await_count < count:
        if loop.time() > deadline:
            raise AssertionError(f"expected {count} calls, got {mock.await_count}")
        await asyncio.sleep(0.01)


class TestQueueWorkerRunOnce:
    """Single cycles."""

    @pytest.mark.asyncio
    async def test_records_stats(self):
        processor = make_processor()
        worker = QueueWorker(processor, QueueName.VALIDATION)

        result = await worker.run_once()

        assert result == MOCK_SUMMARY
        processor.run_cycle.assert_awaited_once_with(QueueName.VALIDATION)
        status = worker.status()
        assert status["cycles_run"] == 1
        assert status["last_run_at"]
        assert status["last_error"] is None
        assert "results" not in status["last_result"]
        assert status["last_result"]["processed"] == 1

    @pytest.mark.asyncio
    async def test_error_is_recorded_and_raised(self):
        processor = make_processor(side_effect=RuntimeError("store down"))
        worker = QueueWorker(processor, QueueName.PDF)

        with pytest.raises(RuntimeError):
            await worker.run_once()

        assert worker.last_error == "store down"
        assert worker.cycles_run == 0

    @pytest.mark.asyncio
    async def test_cycles_do_not_overlap(self):
        active = 0
        peak = 0

        async def slow_cycle(queue):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return MOCK_SUMMARY

        processor = MagicMock()
        processor.run_cycle = slow_cycle
        worker = QueueWorker(processor, QueueName.EMAIL)

        await asyncio.gather(worker.run_once(), worker.run_once(), worker.run_once())

        assert peak == 1
        assert worker.cycles_run == 3


class TestQueueWorkerLoop:
    """Background polling task."""

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop_cancels(self):
        processor = make_processor()
        worker = QueueWorker(processor, QueueName.VALIDATION, interval_seconds=60, debounce_seconds=0.01)

        worker.start()
        try:
            await wait_for_calls(processor.run_cycle, 1)
            assert worker.is_running
        finally:
            await worker.stop()

        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self):
        processor = make_processor()
        worker = QueueWorker(processor, QueueName.VALIDATION, interval_seconds=60)

        worker.start()
        task = worker._task
        worker.start()
        try:
            assert worker._task is task
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_polls_on_interval(self):
        processor = make_processor()
        worker = QueueWorker(processor, QueueName.PDF, interval_seconds=0.02)

        worker.start()
        try:
            await wait_for_calls(processor.run_cycle, 3)
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_notify_triggers_debounced_cycle(self):
        processor = make_processor()
        worker = QueueWorker(processor, QueueName.EMAIL, interval_seconds=60, debounce_seconds=0.01)

        worker.start()
        try:
            await wait_for_calls(processor.run_cycle, 1)
            worker.notify()
            worker.notify()
            worker.notify()
            await wait_for_calls(processor.run_cycle, 2)
            await asyncio.sleep(0.05)
            assert processor.run_cycle.await_count == 2
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self):
        processor = make_processor(side_effect=[RuntimeError("boom"), MOCK_SUMMARY, MOCK_SUMMARY])
        worker = QueueWorker(processor, QueueName.VALIDATION, interval_seconds=0.01)

        worker.start()
        try:
            await wait_for_calls(processor.run_cycle, 2)
        finally:
            await worker.stop()

        assert worker.cycles_run >= 1


class TestQueueWorkerPool:
    """One worker per queue."""

    def test_one_worker_per_queue(self):
        pool = QueueWorkerPool(make_processor(), interval_seconds=5)

        assert set(pool.workers) == set(QueueName)
        assert pool.get("pdf").queue == QueueName.PDF
        assert pool.get(QueueName.EMAIL).interval_seconds == 5

    def test_status(self):
        pool = QueueWorkerPool(make_processor())

        status = pool.status()

        assert set(status) == {"validation", "pdf", "email"}
        assert status["email"]["running"] is False
        assert status["email"]["busy"] is False

    @pytest.mark.asyncio
    async def test_start_and_stop_all(self):
        pool = QueueWorkerPool(make_processor(), interval_seconds=60)

        pool.start_all()
        try:
            assert all(worker.is_running for worker in pool.workers.values())
        finally:
            await pool.stop_all()

        assert not any(worker.is_running for worker in pool.workers.values())
