import os
import io
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import qrcode

from database import Base, engine, SessionLocal
from errors import (
    DuplicateBatch,
    GenesisSealFailure,
    LedgerUnavailable,
    NotFound,
    PersistenceFailure,
    ValidationError,
)
from ledger import Ledger, SimulatedLedger
from provenance import ProvenanceCore
from schemas import (
    ActorRole,
    AppendEvent,
    Batch,
    BatchList,
    CarrierPickup,
    CreateBatch,
    CreateBatchRequest,
    Event,
    Location,
    LocationFix,
    RetailReceipt,
    TraceBundle,
    VerifyReport,
)
from store import SqlAlchemyStore

# ---------- Config ----------
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LEDGER_DELAY_MS = int(os.getenv("LEDGER_DELAY_MS", "800"))
LEDGER_FAILURE_RATE = float(os.getenv("LEDGER_FAILURE_RATE", "0"))
LEDGER_TIMEOUT_S = float(os.getenv("LEDGER_TIMEOUT_S", "3"))
LEDGER_ATTEMPTS = int(os.getenv("LEDGER_ATTEMPTS", "3"))

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("cropchain")

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    logger.info("CropChain ready (ledger delay %d ms)", LEDGER_DELAY_MS)
    yield

app = FastAPI(title="CropChain Provenance", version="0.2.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # restrict to known origins in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- Dependencies ----------
_ledger = SimulatedLedger(delay=LEDGER_DELAY_MS / 1000.0, failure_rate=LEDGER_FAILURE_RATE)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_ledger() -> Ledger:
    return _ledger

def get_core(db: Session = Depends(get_db), ledger: Ledger = Depends(get_ledger)) -> ProvenanceCore:
    return ProvenanceCore(
        SqlAlchemyStore(db),
        ledger,
        ledger_timeout=LEDGER_TIMEOUT_S,
        ledger_attempts=LEDGER_ATTEMPTS,
    )

# ---------- Error mapping ----------
@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(DuplicateBatch)
async def duplicate_handler(request: Request, exc: DuplicateBatch):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})

@app.exception_handler(LedgerUnavailable)
async def ledger_handler(request: Request, exc: LedgerUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc), "retry": True})

@app.exception_handler(GenesisSealFailure)
async def genesis_handler(request: Request, exc: GenesisSealFailure):
    return JSONResponse(status_code=503, content={
        "detail": str(exc),
        "batch_id": exc.batch.id,
        "retry": f"/api/batches/{exc.batch.id}/genesis",
    })

@app.exception_handler(PersistenceFailure)
async def persistence_handler(request: Request, exc: PersistenceFailure):
    logger.error("store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "storage failure", "retry": True})

# ---------- APIs: producers ----------
@app.post("/api/batches", response_model=Batch)
async def create_batch(body: CreateBatchRequest, core: ProvenanceCore = Depends(get_core)):
    data = CreateBatch(**body.model_dump(exclude={"latitude", "longitude"}))
    return await core.create_batch(data, Location(latitude=body.latitude, longitude=body.longitude))

@app.post("/api/batches/{batch_id}/genesis", response_model=Event)
async def seal_genesis(batch_id: str, body: Optional[LocationFix] = None,
                       core: ProvenanceCore = Depends(get_core)):
    fix = body or LocationFix()
    return await core.seal_genesis(batch_id, Location(latitude=fix.latitude, longitude=fix.longitude))

@app.get("/api/batches", response_model=BatchList)
async def list_batches(
    producer_id: Optional[str] = Query(None),
    q: Optional[str] = Query(None, description="search batch id / crop / producer"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    core: ProvenanceCore = Depends(get_core),
):
    return await core.list_batches(producer_id=producer_id, q=q, page=page, page_size=page_size)

# ---------- APIs: custody events ----------
@app.post("/api/events", response_model=Event)
async def add_event(body: AppendEvent, core: ProvenanceCore = Depends(get_core)):
    return await core.append_event(body.batch_id, body.actor_role, body.actor_name, body.payload,
                                   Location(latitude=body.latitude, longitude=body.longitude))

@app.post("/api/pickups", response_model=Event)
async def add_pickup(body: CarrierPickup, core: ProvenanceCore = Depends(get_core)):
    payload = {
        "action": "Picked up for distribution",
        "transport_mode": body.transport_mode,
        "temperature": body.temperature,
        "carrier": body.carrier,
    }
    return await core.append_event(body.batch_id, ActorRole.CARRIER, body.actor_name, payload,
                                   Location(latitude=body.latitude, longitude=body.longitude))

@app.post("/api/receipts", response_model=Event)
async def add_receipt(body: RetailReceipt, core: ProvenanceCore = Depends(get_core)):
    payload = {
        "action": "Received at Retail Outlet",
        "shelf_location": body.shelf_location,
    }
    return await core.append_event(body.batch_id, ActorRole.RETAILER, body.actor_name, payload,
                                   Location(latitude=body.latitude, longitude=body.longitude))

# ---------- APIs: consumers ----------
@app.get("/api/trace/{batch_id}", response_model=TraceBundle)
async def get_trace(batch_id: str, core: ProvenanceCore = Depends(get_core)):
    return await core.get_trace(batch_id)

@app.get("/api/trace/{batch_id}/verify", response_model=VerifyReport)
async def verify_trace(batch_id: str, core: ProvenanceCore = Depends(get_core)):
    return await core.verify_trace(batch_id)

@app.get("/api/batches/{batch_id}/qrcode")
async def batch_qrcode(batch_id: str, core: ProvenanceCore = Depends(get_core)):
    await core.get_batch(batch_id)
    url = f"{BASE_URL}/trace.html?batch_id={batch_id}"
    img = qrcode.make(url)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")

# ---------- Demo ----------
@app.get("/api/seed")
async def seed(core: ProvenanceCore = Depends(get_core)):
    default_id = "BATCH-DEMO-001"
    try:
        await core.get_batch(default_id)
        return {"status": "exists", "batch_id": default_id}
    except NotFound:
        pass

    await core.create_batch(CreateBatch(
        batch_id=default_id,
        producer_id="farmer-demo",
        crop="Coffee",
        variety="Arabica Typica",
        quantity="500kg",
        origin_description="Plot 4, Doi Chang, Chiang Rai",
        harvest_timestamp="2025-11-20",
    ), Location(latitude=19.8167, longitude=99.5500))
    await add_pickup(CarrierPickup(batch_id=default_id, actor_name="Fast-Track Logistics",
                                   latitude=18.7883, longitude=98.9853), core)
    await add_receipt(RetailReceipt(batch_id=default_id, actor_name="Nimman Fresh Market",
                                    shelf_location="Aisle 3, Shelf B"), core)
    return {"status": "seeded", "batch_id": default_id}

@app.get("/health")
def health():
    return {"status": "online"}
