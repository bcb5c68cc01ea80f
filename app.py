import logging
import re
from typing import Optional

from fastapi import FastAPI, Depends, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sqlalchemy.orm import Session

import config
import schemas
import services
from content_store import ContentStoreClient
from database import Base, engine, SessionLocal
from decoder import ReceiptDecoder
from errors import ChainUnavailable, InvalidRequest, TraceChainError
from ledger import LedgerWriter, Web3Ledger
from mirror import BatchIndex
from reconciler import EventReconciler
from roles import CAPABILITIES, ROUTES, Role, landing_route, may_visit

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("tracechain")

TX_HASH = re.compile(r"0x[0-9a-fA-F]{64}")

app = FastAPI(title="Smart Farm TraceChain", version="0.2.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.index = BatchIndex()
app.state.content_store = ContentStoreClient(
    config.IPFS_UPLOAD_URL, config.IPFS_GATEWAY_URL, timeout=config.CONTENT_STORE_TIMEOUT
)
app.state.ledger = None
app.state.reconciler = None


# ---------- Dependencies ----------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_index(request: Request) -> BatchIndex:
    return request.app.state.index


def get_content_store(request: Request) -> ContentStoreClient:
    return request.app.state.content_store


def _ledger(request: Request):
    if request.app.state.ledger is None:
        raise ChainUnavailable("ledger is not configured (set CONTRACT_ADDRESS and PRIVATE_KEY)")
    return request.app.state.ledger


def get_writer(request: Request) -> LedgerWriter:
    return LedgerWriter(_ledger(request), timeout=config.LEDGER_WRITE_TIMEOUT)


def get_decoder(request: Request) -> ReceiptDecoder:
    return ReceiptDecoder(_ledger(request), request.app.state.content_store,
                          services.make_actor_resolver(SessionLocal))


# ---------- Lifecycle ----------
@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        app.state.index.load(db)
    if not (config.CONTRACT_ADDRESS and config.PRIVATE_KEY):
        logger.warning("ledger not configured; write and decode endpoints will return 503")
        return
    app.state.ledger = Web3Ledger(config.RPC_URL, config.CONTRACT_ADDRESS, config.PRIVATE_KEY,
                                  poll_latency=config.LEDGER_POLL_LATENCY)
    if config.RECONCILER_ENABLED:
        app.state.reconciler = EventReconciler(
            app.state.ledger, SessionLocal, app.state.index, content_store=app.state.content_store,
            poll_interval=config.RECONCILER_POLL_INTERVAL,
            backoff_max=config.RECONCILER_BACKOFF_MAX,
        )
        app.state.reconciler.start()


@app.on_event("shutdown")
def on_shutdown():
    if app.state.reconciler is not None:
        app.state.reconciler.stop()


@app.exception_handler(TraceChainError)
def trace_chain_error(request: Request, exc: TraceChainError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc)})


# ---------- APIs: harvest & verification ----------
@app.post("/api/v1/harvests", response_model=schemas.EventRecorded)
def record_harvest(body: schemas.HarvestCreate, db: Session = Depends(get_db),
                   writer: LedgerWriter = Depends(get_writer),
                   store: ContentStoreClient = Depends(get_content_store),
                   index: BatchIndex = Depends(get_index)):
    batch, ev = services.record_harvest(db, writer, store, index, body)
    return schemas.EventRecorded(
        message="Harvest recorded on ledger.",
        event_id=ev.id, tx_hash=ev.tx_hash, batch_id=batch.batch_id, batch_status=batch.status,
    )


@app.post("/api/v1/batches/{batch_id}/verify", response_model=schemas.EventRecorded)
def verify_batch(batch_id: str, body: schemas.VerifyBatch, db: Session = Depends(get_db),
                 writer: LedgerWriter = Depends(get_writer),
                 store: ContentStoreClient = Depends(get_content_store)):
    batch, ev, cert = services.verify_batch(db, writer, store, batch_id, body)
    return schemas.EventRecorded(
        message="Verification recorded on ledger.",
        event_id=ev.id, tx_hash=ev.tx_hash, batch_id=batch.batch_id, batch_status=batch.status,
        certificate_id=cert.id,
    )


@app.patch("/api/v1/batches/{batch_id}/reject", response_model=schemas.BatchStatusChanged)
def reject_batch(batch_id: str, body: schemas.RejectBatch, db: Session = Depends(get_db)):
    batch = services.reject_batch(db, batch_id, body)
    return schemas.BatchStatusChanged(
        message=f"Batch {batch.batch_id} rejected.", batch_id=batch.batch_id, batch_status=batch.status,
    )


# ---------- APIs: logistics ----------
def _logistics_response(message: str, batch, ev, log) -> schemas.EventRecorded:
    return schemas.EventRecorded(
        message=message, event_id=ev.id, tx_hash=ev.tx_hash, batch_id=batch.batch_id,
        batch_status=batch.status, shipment_log_id=log.id,
    )


@app.post("/api/v1/logistics/pickup", response_model=schemas.EventRecorded)
def record_pickup(body: schemas.LogisticsRecord, db: Session = Depends(get_db),
                  writer: LedgerWriter = Depends(get_writer),
                  store: ContentStoreClient = Depends(get_content_store)):
    return _logistics_response("Pickup recorded.", *services.record_pickup(db, writer, store, body))


@app.post("/api/v1/logistics/received", response_model=schemas.EventRecorded)
def record_received(body: schemas.LogisticsRecord, db: Session = Depends(get_db),
                    writer: LedgerWriter = Depends(get_writer),
                    store: ContentStoreClient = Depends(get_content_store)):
    return _logistics_response("Receipt recorded.", *services.record_received(db, writer, store, body))


@app.post("/api/v1/logistics/shipments", response_model=schemas.EventRecorded)
def record_shipment(body: schemas.ShipmentRecord, db: Session = Depends(get_db),
                    writer: LedgerWriter = Depends(get_writer),
                    store: ContentStoreClient = Depends(get_content_store)):
    return _logistics_response(f"Shipment recorded as {body.status}.",
                               *services.record_shipment(db, writer, store, body))


# ---------- APIs: reads ----------
@app.get("/api/v1/harvests", response_model=schemas.HarvestRecordList)
def list_harvests(actor_user_id: str, batch_id: Optional[str] = None, db: Session = Depends(get_db),
                  store: ContentStoreClient = Depends(get_content_store)):
    return schemas.HarvestRecordList(records=services.harvest_records(db, store, actor_user_id, batch_id))


@app.get("/api/v1/harvests/{event_id}")
def get_harvest(event_id: str, actor_user_id: str, db: Session = Depends(get_db),
                store: ContentStoreClient = Depends(get_content_store)):
    return {"success": True, "data": services.harvest_record(db, store, actor_user_id, event_id)}


@app.get("/api/v1/logistics/scan/{batch_id}")
def scan_batch(batch_id: str, actor_user_id: str, db: Session = Depends(get_db),
               store: ContentStoreClient = Depends(get_content_store)):
    return {"success": True, "data": services.pickup_candidate(db, store, actor_user_id, batch_id)}


@app.get("/api/v1/logistics/in-transit", response_model=schemas.InTransitList)
def list_in_transit(db: Session = Depends(get_db)):
    batches = services.in_transit_batches(db)
    return schemas.InTransitList(batches=batches, total=len(batches))


@app.get("/api/v1/batches/{batch_id}", response_model=schemas.BatchSummary)
def get_batch(batch_id: str, db: Session = Depends(get_db)):
    return services.batch_summary(db, batch_id)


@app.get("/api/v1/batches/{batch_id}/history", response_model=schemas.BatchHistory)
def get_batch_history(batch_id: str, db: Session = Depends(get_db)):
    return services.batch_history(db, batch_id)


@app.get("/api/v1/batches/{batch_id}/trace")
def get_batch_trace(batch_id: str, db: Session = Depends(get_db),
                    store: ContentStoreClient = Depends(get_content_store)):
    return {"success": True, "data": services.verification_trace(db, store, batch_id)}


@app.get("/api/v1/transactions/{tx_hash}", response_model=schemas.TransactionResponse)
def get_transaction(tx_hash: str, response: Response, decoder: ReceiptDecoder = Depends(get_decoder)):
    if not TX_HASH.fullmatch(tx_hash):
        raise InvalidRequest("invalid transaction hash format")
    decoded = decoder.decode(tx_hash)
    if not decoded.final:
        response.status_code = 202
    return schemas.TransactionResponse(data=schemas.DecodedTransactionOut.model_validate(decoded))


@app.get("/api/v1/routes/{role}", response_model=schemas.RouteTable)
def get_routes(role: Role, path: Optional[str] = None):
    return schemas.RouteTable(
        role=role.value,
        landing=landing_route(role),
        prefixes=list(ROUTES[role]),
        actions=sorted(a.value for a, roles in CAPABILITIES.items() if role in roles),
        path=path,
        allowed=may_visit(role, path) if path is not None else None,
    )


@app.get("/api/seed")
def seed(db: Session = Depends(get_db)):
    users = services.seed_users(db)
    return {"status": "seeded", "users": [{"id": u.id, "name": u.name, "role": u.role} for u in users]}
