import itertools
import time
from typing import List, Optional, Protocol, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import PersistenceFailure
from models import BatchRecord, EventRecord
from schemas import ActorRole, Batch, Event, Location

def now_ms() -> int:
    return int(time.time() * 1000)

class ProvenanceStore(Protocol):
    """Record store for batches and events.

    Every call is atomic. Missing records come back as ``None``; anything the
    backend rejects is raised as ``PersistenceFailure``.
    """

    async def insert_batch(self, batch: Batch) -> Batch: ...

    async def get_batch(self, batch_id: str) -> Optional[Batch]: ...

    async def list_batches(self, producer_id: Optional[str] = None, q: Optional[str] = None,
                           offset: int = 0, limit: int = 10) -> Tuple[List[Batch], int]: ...

    async def insert_event(self, event: Event) -> Event: ...

    async def list_events(self, batch_id: str) -> List[Event]: ...

# ---------- SQLAlchemy ----------
def _to_batch(row: BatchRecord) -> Batch:
    return Batch(
        id=row.batch_id,
        producer_id=row.producer_id,
        crop=row.crop,
        variety=row.variety,
        quantity=row.quantity,
        origin_description=row.origin_description,
        image_url=row.image_url,
        harvest_timestamp=row.harvest_timestamp,
        created_at=row.created_at,
    )

def _to_event(row: EventRecord) -> Event:
    return Event(
        id=row.event_id,
        batch_id=row.batch_id,
        actor_role=ActorRole(row.actor_role),
        actor_name=row.actor_name,
        timestamp=row.timestamp,
        location=Location(latitude=row.latitude, longitude=row.longitude),
        payload=row.payload,
        content_hash=row.content_hash,
        ledger_ref=row.ledger_ref,
        sequence=row.id,
    )

class SqlAlchemyStore:
    """Store backed by the ``batches``/``events`` tables.

    Session calls block, so each one is pushed to the threadpool. One commit
    per call; any ``SQLAlchemyError`` rolls back and surfaces as
    ``PersistenceFailure``.
    """

    def __init__(self, db: Session):
        self.db = db

    async def insert_batch(self, batch: Batch) -> Batch:
        def _insert():
            row = BatchRecord(
                batch_id=batch.id,
                producer_id=batch.producer_id,
                crop=batch.crop,
                variety=batch.variety,
                quantity=batch.quantity,
                origin_description=batch.origin_description,
                image_url=batch.image_url,
                harvest_timestamp=batch.harvest_timestamp,
                created_at=now_ms(),
            )
            self.db.add(row); self.db.commit(); self.db.refresh(row)
            return _to_batch(row)
        return await self._run(_insert, "insert batch %s" % batch.id)

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        def _get():
            row = self.db.scalar(select(BatchRecord).where(BatchRecord.batch_id == batch_id))
            return _to_batch(row) if row else None
        return await self._run(_get, "read batch %s" % batch_id)

    async def list_batches(self, producer_id=None, q=None, offset=0, limit=10):
        def _list():
            base = select(BatchRecord)
            if producer_id:
                base = base.where(BatchRecord.producer_id == producer_id)
            if q:
                like = f"%{q}%"
                base = base.where(or_(
                    BatchRecord.batch_id.ilike(like),
                    BatchRecord.crop.ilike(like),
                    BatchRecord.producer_id.ilike(like),
                ))
            total = self.db.scalar(select(func.count()).select_from(base.subquery()))
            rows = self.db.scalars(
                base.order_by(BatchRecord.id.desc()).offset(offset).limit(limit)
            ).all()
            return [_to_batch(r) for r in rows], total or 0
        return await self._run(_list, "list batches")

    async def insert_event(self, event: Event) -> Event:
        def _insert():
            row = EventRecord(
                event_id=event.id,
                batch_id=event.batch_id,
                actor_role=event.actor_role.value,
                actor_name=event.actor_name,
                timestamp=event.timestamp,
                latitude=event.location.latitude,
                longitude=event.location.longitude,
                payload=event.payload,
                content_hash=event.content_hash,
                ledger_ref=event.ledger_ref,
            )
            try:
                self.db.add(row); self.db.commit()
            except IntegrityError:
                self.db.rollback()
                # event id is the idempotency key: a replayed write is a no-op
                existing = self.db.scalar(select(EventRecord).where(EventRecord.event_id == event.id))
                if existing is not None and existing.content_hash == event.content_hash:
                    return _to_event(existing)
                raise
            self.db.refresh(row)
            return _to_event(row)
        return await self._run(_insert, "insert event %s" % event.id)

    async def list_events(self, batch_id: str) -> List[Event]:
        def _list():
            rows = self.db.scalars(
                select(EventRecord).where(EventRecord.batch_id == batch_id).order_by(EventRecord.id.asc())
            ).all()
            return [_to_event(r) for r in rows]
        return await self._run(_list, "list events for %s" % batch_id)

    async def _run(self, fn, what):
        def _guarded():
            try:
                return fn()
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise PersistenceFailure(f"could not {what}: {exc}") from exc
        return await run_in_threadpool(_guarded)

# ---------- In-memory ----------
class InMemoryStore:
    """Dict-backed store for tests and local demos."""

    def __init__(self):
        self.batches = {}
        self.events = {}
        self._seq = itertools.count(1)

    async def insert_batch(self, batch: Batch) -> Batch:
        if batch.id in self.batches:
            raise PersistenceFailure(f"batch {batch.id!r} already stored")
        stored = batch.model_copy(update={"created_at": now_ms()})
        self.batches[batch.id] = stored
        return stored

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        return self.batches.get(batch_id)

    async def list_batches(self, producer_id=None, q=None, offset=0, limit=10):
        rows = list(reversed(list(self.batches.values())))
        if producer_id:
            rows = [b for b in rows if b.producer_id == producer_id]
        if q:
            needle = q.lower()
            rows = [b for b in rows
                    if needle in b.id.lower() or needle in b.crop.lower() or needle in b.producer_id.lower()]
        return rows[offset:offset + limit], len(rows)

    async def insert_event(self, event: Event) -> Event:
        existing = self.events.get(event.id)
        if existing is not None:
            if existing.content_hash == event.content_hash:
                return existing
            raise PersistenceFailure(f"event id {event.id!r} reused with different content")
        stored = event.model_copy(update={"sequence": next(self._seq)})
        self.events[event.id] = stored
        return stored

    async def list_events(self, batch_id: str) -> List[Event]:
        return [e for e in self.events.values() if e.batch_id == batch_id]
