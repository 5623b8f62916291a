"""Batch registration, event sealing and trace assembly.

``ProvenanceCore`` sits between the actors and two collaborators it is handed
at construction: a ``ProvenanceStore`` and a ``Ledger``. It keeps no state of
its own, so one instance per request is fine.

Sealing an event runs in a fixed order: timestamp, canonical hash, ledger
reference, then the store write. The ledger is asked before anything is
written, so a ledger failure leaves nothing behind, and every stored event has
both ``content_hash`` and ``ledger_ref``.
"""
import asyncio
import copy
import logging
import secrets
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from errors import (
    DuplicateBatch,
    GenesisSealFailure,
    LedgerUnavailable,
    NotFound,
    ProvenanceError,
    ValidationError,
)
from ledger import Ledger
from schemas import (
    ActorRole,
    Batch,
    BatchBrief,
    BatchList,
    CreateBatch,
    Event,
    Location,
    TraceBundle,
    VerifyReport,
)
from store import ProvenanceStore, now_ms
from utils import compute_hash, sealing_payload, verify_hash

logger = logging.getLogger(__name__)

GENESIS_ACTION = "registration"

def new_batch_id() -> str:
    return secrets.token_hex(8).upper()

def _require(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return value

class ProvenanceCore:
    def __init__(
        self,
        store: ProvenanceStore,
        ledger: Ledger,
        *,
        ledger_timeout: float = 3.0,
        ledger_attempts: int = 3,
        ledger_backoff: float = 0.2,
        clock: Callable[[], int] = now_ms,
    ):
        if ledger_attempts < 1:
            raise ValueError("ledger_attempts must be at least 1")
        self.store = store
        self.ledger = ledger
        self.ledger_timeout = ledger_timeout
        self.ledger_attempts = ledger_attempts
        self.ledger_backoff = ledger_backoff
        self.clock = clock

    # ---------- Batches ----------
    async def create_batch(self, data: CreateBatch, location: Optional[Location] = None) -> Batch:
        """Register a batch and seal its genesis event.

        Raises ``PersistenceFailure`` if the batch itself could not be stored;
        in that case no event exists. If the batch is stored but sealing the
        genesis event fails, raises ``GenesisSealFailure`` carrying the stored
        batch so the caller can retry with :meth:`seal_genesis`.
        """
        for field in ("producer_id", "crop", "quantity", "origin_description", "harvest_timestamp"):
            _require(getattr(data, field), field)
        try:
            # fromisoformat only takes a trailing Z from 3.11 on
            harvest = data.harvest_timestamp.strip()
            datetime.fromisoformat(harvest[:-1] + "+00:00" if harvest.endswith("Z") else harvest)
        except ValueError:
            raise ValidationError(f"harvest_timestamp {data.harvest_timestamp!r} is not ISO-8601") from None

        if data.batch_id is None:
            batch_id = new_batch_id()
        else:
            batch_id = data.batch_id.strip()
            if len(batch_id) < 3:
                raise ValidationError(f"batch_id {data.batch_id!r} must be at least 3 characters")
        if await self.store.get_batch(batch_id) is not None:
            raise DuplicateBatch(f"batch id {batch_id!r} already exists")

        batch = await self.store.insert_batch(Batch(
            id=batch_id,
            producer_id=data.producer_id,
            crop=data.crop,
            variety=data.variety,
            quantity=data.quantity,
            origin_description=data.origin_description,
            image_url=data.image_url,
            harvest_timestamp=data.harvest_timestamp.strip(),
        ))
        logger.info("registered batch %s for producer %s", batch.id, batch.producer_id)

        try:
            await self._seal_and_store(batch, ActorRole.PRODUCER, batch.producer_id,
                                       self._genesis_payload(batch), location)
        except ProvenanceError as exc:
            logger.error("batch %s stored without genesis event: %s", batch.id, exc)
            raise GenesisSealFailure(batch, exc) from exc
        return batch

    async def seal_genesis(self, batch_id: str, location: Optional[Location] = None) -> Event:
        batch = await self.get_batch(batch_id)
        for ev in await self.store.list_events(batch_id):
            if ev.actor_role == ActorRole.PRODUCER and ev.payload.get("action") == GENESIS_ACTION:
                return ev
        return await self._seal_and_store(batch, ActorRole.PRODUCER, batch.producer_id,
                                          self._genesis_payload(batch), location)

    async def list_batches(self, producer_id: Optional[str] = None, q: Optional[str] = None,
                           page: int = 1, page_size: int = 10) -> BatchList:
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        batches, total = await self.store.list_batches(
            producer_id=producer_id, q=q, offset=(page - 1) * page_size, limit=page_size)
        items = []
        for b in batches:
            events = await self.store.list_events(b.id)
            items.append(BatchBrief(
                id=b.id,
                producer_id=b.producer_id,
                crop=b.crop,
                quantity=b.quantity,
                harvest_timestamp=b.harvest_timestamp,
                total_events=len(events),
                verified=all(self.verify_event(e) for e in events),
            ))
        return BatchList(items=items, total=total, page=page, page_size=page_size)

    # ---------- Events ----------
    async def append_event(self, batch_id: str, actor_role: ActorRole, actor_name: str,
                           payload: Dict[str, Any], location: Optional[Location] = None) -> Event:
        batch = await self.get_batch(batch_id)
        try:
            actor_role = ActorRole(actor_role)
        except ValueError:
            raise ValidationError(f"unknown actor role {actor_role!r}") from None
        _require(actor_name, "actor_name")
        if not isinstance(payload, dict):
            raise ValidationError("payload must be a mapping")
        action = payload.get("action")
        if not isinstance(action, str) or not action.strip():
            raise ValidationError("payload.action is required")
        return await self._seal_and_store(batch, actor_role, actor_name, payload, location)

    # ---------- Trace ----------
    async def get_trace(self, batch_id: str) -> TraceBundle:
        batch = await self.get_batch(batch_id)
        events = await self.store.list_events(batch_id)
        events = sorted(events, key=lambda e: (e.timestamp, e.sequence))
        return TraceBundle(batch=batch, events=events)

    def verify_event(self, event: Event) -> bool:
        try:
            data = sealing_payload(event.batch_id, ActorRole(event.actor_role).value, event.payload,
                                   event.location.latitude, event.location.longitude, event.timestamp)
        except (AttributeError, ValueError):
            return False
        return verify_hash(data, event.content_hash)

    async def verify_trace(self, batch_id: str) -> VerifyReport:
        trace = await self.get_trace(batch_id)
        tampered = [e.id for e in trace.events if not self.verify_event(e)]
        if tampered:
            logger.warning("batch %s has %d event(s) failing verification", batch_id, len(tampered))
        return VerifyReport(batch_id=batch_id, verified=not tampered,
                            events=len(trace.events), tampered=tampered)

    # ---------- Helpers ----------
    async def get_batch(self, batch_id: str) -> Batch:
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise NotFound(batch_id)
        return batch

    @staticmethod
    def _genesis_payload(batch: Batch) -> Dict[str, Any]:
        payload = {
            "action": GENESIS_ACTION,
            "crop": batch.crop,
            "quantity": batch.quantity,
            "origin": batch.origin_description,
        }
        if batch.variety:
            payload["variety"] = batch.variety
        return payload

    async def _seal_and_store(self, batch: Batch, actor_role: ActorRole, actor_name: str,
                              payload: Dict[str, Any], location: Optional[Location]) -> Event:
        location = location or Location()
        payload = copy.deepcopy(payload)
        timestamp = self.clock()
        try:
            content_hash = compute_hash(sealing_payload(
                batch.id, actor_role.value, payload, location.latitude, location.longitude, timestamp))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"payload is not JSON-serializable: {exc}") from exc

        ledger_ref = await self._submit(content_hash)
        event = Event(
            id=uuid.uuid4().hex,
            batch_id=batch.id,
            actor_role=actor_role,
            actor_name=actor_name,
            timestamp=timestamp,
            location=location,
            payload=payload,
            content_hash=content_hash,
            ledger_ref=ledger_ref,
        )
        stored = await self.store.insert_event(event)
        logger.info("sealed %s event %s on batch %s (tx %s)",
                    actor_role.value, stored.id, batch.id, ledger_ref)
        return stored

    async def _submit(self, content_hash: str) -> str:
        delay = self.ledger_backoff
        for attempt in range(1, self.ledger_attempts + 1):
            try:
                return await asyncio.wait_for(self.ledger.submit(content_hash), self.ledger_timeout)
            except Exception as exc:
                last = exc
                logger.warning("ledger submit attempt %d/%d failed: %r",
                               attempt, self.ledger_attempts, exc)
            if attempt < self.ledger_attempts:
                await asyncio.sleep(delay)
                delay *= 2
        logger.error("ledger unavailable after %d attempts", self.ledger_attempts)
        raise LedgerUnavailable(f"ledger submission failed: {last!r}") from last
