import pytest

from shop_reconciler.application.janitor_gate import JanitorJobGate
from shop_reconciler.core.errors import RateLimitedError
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

pytestmark = pytest.mark.usefixtures("setup_database")


class TestJanitorJobGate:
    @pytest.mark.asyncio
    async def test_second_run_within_interval_is_rate_limited(
        self, unit_of_work: UnitOfWork
    ):
        # Given
        gate = JanitorJobGate(unit_of_work, min_interval_seconds=60)
        await gate.acquire("restock-stale")

        # When
        with pytest.raises(RateLimitedError) as exc_info:
            await gate.acquire("restock-stale")

        # Then
        assert 1 <= exc_info.value.retry_after <= 60
        assert exc_info.value.details["job"] == "restock-stale"

    @pytest.mark.asyncio
    async def test_jobs_are_gated_independently(self, unit_of_work: UnitOfWork):
        # Given
        gate = JanitorJobGate(unit_of_work, min_interval_seconds=60)
        first = await gate.acquire("restock-stale")

        # When
        second = await gate.acquire("events-drain")

        # Then
        assert first != second

    @pytest.mark.asyncio
    async def test_zero_interval_never_blocks(self, unit_of_work: UnitOfWork):
        # Given
        gate = JanitorJobGate(unit_of_work, min_interval_seconds=0)

        # When
        runs = [await gate.acquire("events-drain") for _ in range(3)]

        # Then
        assert len(set(runs)) == 3
