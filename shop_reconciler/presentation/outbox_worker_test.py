from unittest.mock import AsyncMock

import pytest

from shop_reconciler.application.apply_provider_event import DrainResult
from shop_reconciler.presentation.event_queue_worker import EventQueueWorker
from shop_reconciler.presentation.outbox_worker import OutboxWorker


class TestOutboxWorker:
    @pytest.mark.asyncio
    async def test_run_once_returns_sent_count(self):
        # Given
        use_case = AsyncMock(return_value=3)
        worker = OutboxWorker(use_case=use_case)

        # When
        sent = await worker.run_once()

        # Then
        assert sent == 3
        use_case.assert_awaited_once_with()

    @pytest.mark.asyncio
    async def test_run_once_survives_failures(self):
        # Given
        use_case = AsyncMock(side_effect=ConnectionError("db is down"))
        worker = OutboxWorker(use_case=use_case)

        # When
        sent = await worker.run_once()

        # Then
        assert sent == 0


class TestEventQueueWorker:
    @pytest.mark.asyncio
    async def test_run_once_drains_with_worker_id(self):
        # Given
        use_case = AsyncMock(
            return_value=DrainResult(processed=2, results={"applied": 2}, retryable=0)
        )
        worker = EventQueueWorker(use_case=use_case, worker_id="worker-1", batch_size=10)

        # When
        processed = await worker.run_once()

        # Then
        assert processed == 2
        use_case.assert_awaited_once_with("worker-1", 10)

    @pytest.mark.asyncio
    async def test_run_once_survives_failures(self):
        # Given
        use_case = AsyncMock(side_effect=RuntimeError("boom"))
        worker = EventQueueWorker(use_case=use_case, worker_id="worker-1")

        # When
        processed = await worker.run_once()

        # Then
        assert processed == 0
