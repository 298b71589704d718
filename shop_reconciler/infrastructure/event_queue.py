"""Durable queue of inbound provider events.

Claims are time-leased soft locks: a worker that dies mid-apply simply lets
``claim_expires_at`` lapse and another worker picks the row up again. Every
claim statement keeps its ``FOR UPDATE SKIP LOCKED`` clause explicit here so
two workers never wait on, or both receive, the same row.
"""

from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import Row, func, literal_column, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from shop_reconciler.core.models import AppliedResult, PaymentProvider, ProviderEvent
from shop_reconciler.infrastructure.db_schema import provider_events_tbl
from shop_reconciler.infrastructure.repositories import DoesNotExist, as_uuid

DEFAULT_CLAIM_TTL = timedelta(seconds=45)

_tbl = provider_events_tbl


def _lease_free():
    return or_(_tbl.c.claim_expires_at.is_(None), _tbl.c.claim_expires_at < func.now())


def _claimable():
    # Stored rows wait for an explicit replay.
    return (
        _tbl.c.applied_at.is_(None),
        or_(
            _tbl.c.applied_result.is_(None),
            _tbl.c.applied_result != AppliedResult.STORED,
        ),
        _lease_free(),
    )


def _replayable(provider: PaymentProvider):
    return (
        _tbl.c.provider == provider,
        _tbl.c.applied_at.is_(None),
        _tbl.c.applied_result == AppliedResult.STORED,
        _lease_free(),
    )


class ProviderEventRepository:
    class CreateDTO(BaseModel):
        provider: PaymentProvider
        event_key: str
        invoice_id: str | None
        status: str
        amount: int | None
        ccy: int | None
        reference: str | None
        raw_payload: dict
        normalized_payload: dict
        raw_sha256: str
        provider_modified_at: datetime | None

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> ProviderEvent:
        if row is None:
            raise DoesNotExist

        return ProviderEvent(
            id=str(row._mapping["id"]),
            provider=row._mapping["provider"],
            event_key=row._mapping["event_key"],
            invoice_id=row._mapping["invoice_id"],
            status=row._mapping["status"],
            amount=row._mapping["amount"],
            ccy=row._mapping["ccy"],
            reference=row._mapping["reference"],
            raw_payload=row._mapping["raw_payload"],
            normalized_payload=row._mapping["normalized_payload"],
            raw_sha256=row._mapping["raw_sha256"],
            provider_modified_at=row._mapping["provider_modified_at"],
            received_at=row._mapping["received_at"],
            claimed_at=row._mapping["claimed_at"],
            claim_expires_at=row._mapping["claim_expires_at"],
            claimed_by=row._mapping["claimed_by"],
            apply_attempts=row._mapping["apply_attempts"],
            applied_at=row._mapping["applied_at"],
            applied_result=row._mapping["applied_result"],
            applied_error_code=row._mapping["applied_error_code"],
            applied_error_message=row._mapping["applied_error_message"],
        )

    async def insert_if_new(self, event: CreateDTO) -> ProviderEvent | None:
        """Insert the event; None means a row with the same hash or key exists."""
        stmt = (
            insert(_tbl)
            .values(event.model_dump())
            .on_conflict_do_nothing()
            .returning(literal_column("*"))
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()
        return None if row is None else self._construct(row)

    async def find_duplicate(self, event_key: str, raw_sha256: str) -> ProviderEvent | None:
        stmt = (
            select(_tbl)
            .where(or_(_tbl.c.raw_sha256 == raw_sha256, _tbl.c.event_key == event_key))
            .limit(1)
        )
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def get_by_id(self, event_id: str) -> ProviderEvent:
        stmt = select(_tbl).where(_tbl.c.id == as_uuid(event_id))
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    def _claim_values(self, claimed_by: str, ttl: timedelta) -> dict:
        return {
            "claimed_at": func.now(),
            "claim_expires_at": func.now() + ttl,
            "claimed_by": claimed_by,
            "apply_attempts": _tbl.c.apply_attempts + 1,
        }

    async def claim_next_event(
        self, claimed_by: str, ttl: timedelta = DEFAULT_CLAIM_TTL
    ) -> ProviderEvent | None:
        picked = (
            select(_tbl.c.id)
            .where(*_claimable())
            .order_by(
                _tbl.c.provider_modified_at.asc().nulls_last(),
                _tbl.c.received_at.asc(),
                _tbl.c.id.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(_tbl)
            .where(_tbl.c.id == picked, *_claimable())
            .values(self._claim_values(claimed_by, ttl))
            .returning(literal_column("*"))
        )
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def claim_next_stored_event(
        self,
        provider: PaymentProvider,
        claimed_by: str,
        ttl: timedelta = DEFAULT_CLAIM_TTL,
    ) -> ProviderEvent | None:
        picked = (
            select(_tbl.c.id)
            .where(*_replayable(provider))
            .order_by(
                _tbl.c.provider_modified_at.asc().nulls_last(),
                _tbl.c.received_at.asc(),
                _tbl.c.id.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(_tbl)
            .where(_tbl.c.id == picked, *_replayable(provider))
            .values(self._claim_values(claimed_by, ttl))
            .returning(literal_column("*"))
        )
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def count_stored(self, provider: PaymentProvider) -> int:
        stmt = select(func.count()).where(
            _tbl.c.provider == provider,
            _tbl.c.applied_at.is_(None),
            _tbl.c.applied_result == AppliedResult.STORED,
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def claim_event(
        self, event_id: str, claimed_by: str, ttl: timedelta = DEFAULT_CLAIM_TTL
    ) -> ProviderEvent | None:
        """Claim one specific row, e.g. right after ingesting it."""
        picked = (
            select(_tbl.c.id)
            .where(_tbl.c.id == as_uuid(event_id), *_claimable())
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(_tbl)
            .where(_tbl.c.id == picked, *_claimable())
            .values(self._claim_values(claimed_by, ttl))
            .returning(literal_column("*"))
        )
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def mark_applied(
        self,
        event_id: str,
        result: AppliedResult,
        *,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        stmt = (
            update(_tbl)
            .where(_tbl.c.id == as_uuid(event_id), _tbl.c.applied_at.is_(None))
            .values(
                applied_at=func.now(),
                applied_result=result,
                applied_error_code=error_code,
                applied_error_message=error_message,
                claim_expires_at=None,
            )
        )
        await self._session.execute(stmt)

    async def record_retryable_failure(
        self, event_id: str, *, error_code: str, error_message: str
    ) -> None:
        """Record the error but leave ``applied_at`` null.

        The lease is kept, so the row is retried once it expires rather than
        immediately by the same drain loop.
        """
        stmt = (
            update(_tbl)
            .where(_tbl.c.id == as_uuid(event_id), _tbl.c.applied_at.is_(None))
            .values(
                applied_error_code=error_code,
                applied_error_message=error_message,
            )
        )
        await self._session.execute(stmt)

    async def mark_stored(self, event_id: str) -> None:
        """Park the row for a later replay: ``applied_at`` stays null."""
        stmt = (
            update(_tbl)
            .where(_tbl.c.id == as_uuid(event_id), _tbl.c.applied_at.is_(None))
            .values(
                applied_result=AppliedResult.STORED,
                applied_error_code=None,
                applied_error_message=None,
                claim_expires_at=None,
            )
        )
        await self._session.execute(stmt)
