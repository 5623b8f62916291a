from enum import Enum
from typing import Optional, Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

class ActorRole(str, Enum):
    PRODUCER = "PRODUCER"
    CARRIER = "CARRIER"
    RETAILER = "RETAILER"

class Location(BaseModel):
    # either coordinate may be missing when the device fix fails
    model_config = ConfigDict(frozen=True)

    latitude: Optional[float] = None
    longitude: Optional[float] = None

# ---------- Domain records ----------
class Batch(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    producer_id: str
    crop: str
    variety: Optional[str] = None
    quantity: str
    origin_description: str
    image_url: Optional[str] = None
    harvest_timestamp: str
    created_at: Optional[int] = None  # epoch ms, set by the store

class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    batch_id: str
    actor_role: ActorRole
    actor_name: str
    timestamp: int  # epoch ms
    location: Location = Field(default_factory=Location)
    payload: Dict[str, Any]
    content_hash: str
    ledger_ref: str
    sequence: int = 0  # assigned by the store on insert

class TraceBundle(BaseModel):
    batch: Batch
    events: List[Event]

# ---------- Requests ----------
class CreateBatch(BaseModel):
    batch_id: Optional[str] = Field(None, min_length=3, max_length=64)
    producer_id: str
    crop: str
    variety: Optional[str] = None
    quantity: str
    origin_description: str
    image_url: Optional[str] = None
    harvest_timestamp: str  # YYYY-MM-DD or full ISO-8601

class CreateBatchRequest(CreateBatch):
    latitude: Optional[float] = None
    longitude: Optional[float] = None

class AppendEvent(BaseModel):
    batch_id: str
    actor_role: ActorRole
    actor_name: str
    payload: Dict[str, Any]
    latitude: Optional[float] = None
    longitude: Optional[float] = None

class CarrierPickup(BaseModel):
    batch_id: str
    actor_name: str
    transport_mode: str = "Truck - Refrigerated"
    temperature: str = "4°C"
    carrier: str = "Fast-Track Logistics"
    latitude: Optional[float] = None
    longitude: Optional[float] = None

class RetailReceipt(BaseModel):
    batch_id: str
    actor_name: str
    shelf_location: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

class LocationFix(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None

# ---------- Responses ----------
class BatchBrief(BaseModel):
    id: str
    producer_id: str
    crop: str
    quantity: str
    harvest_timestamp: str
    total_events: int
    verified: bool

class BatchList(BaseModel):
    items: List[BatchBrief]
    total: int
    page: int
    page_size: int

class VerifyReport(BaseModel):
    batch_id: str
    verified: bool
    events: int
    tampered: List[str] = Field(default_factory=list)
