from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import BigInteger, Float, Integer, JSON, String
from database import Base

class BatchRecord(Base):
    __tablename__ = "batches"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    batch_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    producer_id: Mapped[str] = mapped_column(String(128), index=True)
    crop: Mapped[str] = mapped_column(String(100))
    variety: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quantity: Mapped[str] = mapped_column(String(64))
    origin_description: Mapped[str] = mapped_column(String(255))
    image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    harvest_timestamp: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[int] = mapped_column(BigInteger)

class EventRecord(Base):
    # batch_id is a lookup key, not a foreign key: events never own the batch lifecycle
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    batch_id: Mapped[str] = mapped_column(String(64), index=True)
    actor_role: Mapped[str] = mapped_column(String(16))
    actor_name: Mapped[str] = mapped_column(String(255))
    timestamp: Mapped[int] = mapped_column(BigInteger, index=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    ledger_ref: Mapped[str] = mapped_column(String(128), nullable=False)
