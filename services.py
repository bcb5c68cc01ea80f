"""Provenance actions. Each write goes content store -> ledger -> mirror -> status."""
import base64
import binascii
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import lifecycle
import schemas
from errors import (
    ActorResolutionFailure, BatchNotFound, InvalidRequest, RecordNotFound, StateConflict, UserNotFound,
)
from identifier import encode_batch_id, generate_batch_id
from lifecycle import BatchStatus
from mirror import BatchIndex, upsert_product_event
from models import Batch, Certificate, ProductEvent, ShipmentLog, User
from roles import Action, Role, require
from utils import EventType, event_name, utc_iso

logger = logging.getLogger(__name__)


# ---------- Helpers ----------
def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _actor(db: Session, user_id: str, action: Action) -> User:
    user = _user(db, user_id)
    require(user.role, action)
    if not user.actor_address:
        raise InvalidRequest(f"user {user.id} has no ledger address")
    return user


def _batch(db: Session, batch_id: str) -> Batch:
    batch = db.scalar(select(Batch).where(or_(Batch.batch_id == batch_id, Batch.id == batch_id)))
    if batch is None:
        raise BatchNotFound(f"batch {batch_id} not found")
    return batch


def _user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise UserNotFound(f"user {user_id} not found")
    return user


def _first_harvest(db: Session, batch: Batch) -> Optional[ProductEvent]:
    return db.scalar(
        select(ProductEvent)
        .where(ProductEvent.batch_ref_id == batch.id, ProductEvent.event_type == EventType.HARVEST)
        .order_by(ProductEvent.block_number.asc())
    )


def _mirror(db: Session, batch: Batch, user: User, event_type: int, content_address: str, tx) -> ProductEvent:
    ev, created = upsert_product_event(
        db,
        tx_hash=tx.tx_hash,
        batch_ref_id=batch.id,
        batch_id=batch.batch_id,
        event_type=event_type,
        content_address=content_address,
        actor_address=user.actor_address,
        block_number=tx.block_number,
        log_index=tx.log_index,
        block_timestamp=tx.block_timestamp,
        actor_user_id=user.id,
    )
    if not created:
        logger.info("tx %s was already mirrored by the reconciler", tx.tx_hash)
    return ev


def make_actor_resolver(session_factory: Callable[[], Session]) -> Callable[[str], str]:
    def resolve(address: str) -> str:
        try:
            with session_factory() as db:
                name = db.scalar(select(User.name).where(func.lower(User.actor_address) == address.lower()))
        except SQLAlchemyError as exc:
            raise ActorResolutionFailure(f"identity lookup failed: {exc}") from exc
        if name is None:
            raise ActorResolutionFailure(f"no user registered for {address}")
        return name
    return resolve


# ---------- Writes ----------
def record_harvest(db: Session, writer, store, index: BatchIndex,
                   body: schemas.HarvestCreate) -> Tuple[Batch, ProductEvent]:
    user = _actor(db, body.actor_user_id, Action.RECORD_HARVEST)
    batch_id = body.batch_id or generate_batch_id("HRV")
    encode_batch_id(batch_id)
    if db.scalar(select(Batch.id).where(Batch.batch_id == batch_id)):
        raise StateConflict(f"batch {batch_id} already exists")

    payload = {
        "batchId": batch_id,
        "eventType": int(EventType.HARVEST),
        "farmerId": user.id,
        "productName": body.product_name,
        "harvestDate": body.harvest_date,
        "location": body.location,
        "quantity": body.quantity,
        "unit": body.unit,
        "photoIpfsHash": body.photo_content_address,
        "timestamp": _now_iso(),
    }
    content_address = store.put_json(payload)
    tx = writer.write(user.actor_address, batch_id, content_address, EventType.HARVEST)

    batch = Batch(batch_id=batch_id, product_name=body.product_name, farmer_id=user.id,
                  status=BatchStatus.PENDING.value)
    db.add(batch)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # the reconciler saw the harvest event first and created the batch
        batch = db.scalar(select(Batch).where(Batch.batch_id == batch_id))
        if batch is None:
            raise
        logger.info("batch %s was created by the reconciler; reusing it", batch_id)
    index.add(batch.batch_id, batch.id)

    ev = _mirror(db, batch, user, EventType.HARVEST, content_address, tx)
    return batch, ev


def verify_batch(db: Session, writer, store, batch_id: str,
                 body: schemas.VerifyBatch) -> Tuple[Batch, ProductEvent, Certificate]:
    admin = _actor(db, body.actor_user_id, Action.VERIFY)
    batch = _batch(db, batch_id)
    lifecycle.ensure_pending(batch, "verify")

    harvest = _first_harvest(db, batch)
    if harvest is None:
        raise BatchNotFound(f"batch {batch.batch_id} has no harvest record")

    try:
        cert_bytes = base64.b64decode(body.certificate_file, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequest("certificate_file must be base64") from exc
    if not cert_bytes:
        raise InvalidRequest("certificate_file is empty")
    cert_address = store.put(cert_bytes, body.certificate_content_type,
                             filename=f"{batch.batch_id}-certificate")

    # the row is only persisted once the ledger write is final
    certificate = Certificate(
        id=str(uuid.uuid4()),
        batch_ref_id=batch.id,
        cert_name=body.certificate_name,
        expiry_date=body.expiry_date,
        cert_hash=cert_address,
        issued_by_id=admin.id,
        notes=body.notes,
    )
    payload = {
        "eventType": int(EventType.VERIFICATION),
        "eventId": harvest.id,
        "batchId": batch.batch_id,
        "certificateId": certificate.id,
        "certificateHash": cert_address,
        "issuedByAddress": admin.actor_address,
        "issuedByUserId": admin.id,
        "timestamp": _now_iso(),
    }
    content_address = store.put_json(payload)
    tx = writer.write(admin.actor_address, batch.batch_id, content_address, EventType.VERIFICATION)

    db.add(certificate)
    db.commit()
    ev = _mirror(db, batch, admin, EventType.VERIFICATION, content_address, tx)

    db.refresh(batch)
    if not lifecycle.settle_confirmed(batch, admin.id):
        logger.warning("batch %s became %s while verification tx %s was pending",
                       batch.batch_id, batch.status, tx.tx_hash)
    db.commit()
    return batch, ev, certificate


def reject_batch(db: Session, batch_id: str, body: schemas.RejectBatch) -> Batch:
    admin = _user(db, body.actor_user_id)
    require(admin.role, Action.REJECT)
    batch = _batch(db, batch_id)
    lifecycle.reject(batch, body.notes, admin.id)
    db.commit()
    logger.info("batch %s rejected by %s", batch.batch_id, admin.id)
    return batch


def _record_logistics(db: Session, writer, store, user: User, batch: Batch, status: str,
                      event_type: EventType, gps: str, notes: Optional[str],
                      extra: Dict[str, Any]) -> Tuple[ProductEvent, ShipmentLog]:
    if batch.status == BatchStatus.REJECTED.value:
        raise StateConflict(f"batch {batch.batch_id} is REJECTED; logistics events are closed")

    payload = {
        "batchId": batch.batch_id,
        "eventType": int(event_type),
        "actorUserId": user.id,
        "status": status,
        "location": gps,
        "notes": notes,
        "timestamp": _now_iso(),
        **extra,
    }
    content_address = store.put_json(payload)
    tx = writer.write(user.actor_address, batch.batch_id, content_address, event_type)
    ev = _mirror(db, batch, user, event_type, content_address, tx)

    log = db.scalar(select(ShipmentLog).where(ShipmentLog.product_event_id == ev.id))
    if log is None:
        log = ShipmentLog(
            batch_ref_id=batch.id,
            product_event_id=ev.id,
            status=status,
            gps_coordinates=gps,
            notes=notes,
            actor_user_id=user.id,
        )
        db.add(log)
        db.commit()
        db.refresh(log)
    return ev, log


def record_pickup(db: Session, writer, store, body: schemas.LogisticsRecord):
    user = _actor(db, body.actor_user_id, Action.PICKUP)
    batch = _batch(db, body.batch_id)
    extra = {"quantity": body.quantity, "unit": body.unit, "counterpartyAddress": body.counterparty_address}
    ev, log = _record_logistics(db, writer, store, user, batch, "PICKED", EventType.PICKED,
                                body.gps_coordinates, body.notes, extra)
    return batch, ev, log


def record_received(db: Session, writer, store, body: schemas.LogisticsRecord):
    user = _actor(db, body.actor_user_id, Action.RECEIVE)
    batch = _batch(db, body.batch_id)
    extra = {"quantity": body.quantity, "unit": body.unit, "counterpartyAddress": body.counterparty_address}
    ev, log = _record_logistics(db, writer, store, user, batch, "RECEIVED", EventType.RECEIVED,
                                body.gps_coordinates, body.notes, extra)
    return batch, ev, log


SHIPMENT_EVENT_TYPES = {"PICKED": EventType.PICKED, "RECEIVED": EventType.HANDOVER_RECEIVED}


def record_shipment(db: Session, writer, store, body: schemas.ShipmentRecord):
    user = _actor(db, body.actor_user_id, Action.RECORD_SHIPMENT)
    batch = _batch(db, body.batch_id)
    ev, log = _record_logistics(db, writer, store, user, batch, body.status,
                                SHIPMENT_EVENT_TYPES[body.status], body.gps_coordinates, body.notes, {})
    return batch, ev, log


# ---------- Reads ----------
def batch_summary(db: Session, batch_id: str) -> schemas.BatchSummary:
    batch = _batch(db, batch_id)
    total = db.scalar(select(func.count()).select_from(ProductEvent).where(ProductEvent.batch_ref_id == batch.id))
    summary = schemas.BatchSummary.model_validate(batch)
    summary.total_events = total or 0
    return summary


def _describe(ev: ProductEvent) -> str:
    who = ev.actor_user.name if ev.actor_user else "system"
    if ev.shipment_log is not None:
        return f"Logistics {ev.shipment_log.status} by {who}"
    if ev.event_type == EventType.HARVEST:
        return f"Initial harvest record (content {ev.content_address})"
    if ev.event_type == EventType.VERIFICATION:
        return f"Quality certificate issued by {who}"
    return f"{event_name(ev.event_type)} recorded by {who}"


def batch_history(db: Session, batch_id: str) -> schemas.BatchHistory:
    batch = _batch(db, batch_id)
    events = db.scalars(
        select(ProductEvent)
        .where(ProductEvent.batch_ref_id == batch.id)
        .order_by(ProductEvent.block_number.asc(), ProductEvent.log_index.asc())
    ).all()
    entries: List[schemas.HistoryEntry] = []
    for ev in events:
        log = ev.shipment_log
        entries.append(schemas.HistoryEntry(
            id=ev.id,
            tx_hash=ev.tx_hash,
            content_address=ev.content_address,
            block_number=ev.block_number,
            block_timestamp=utc_iso(ev.block_timestamp),
            event_type=ev.event_type,
            event_name=log.status if log else event_name(ev.event_type),
            description=_describe(ev),
            actor_address=ev.actor_address,
            actor_name=ev.actor_user.name if ev.actor_user else None,
            actor_role=ev.actor_user.role if ev.actor_user else "SYSTEM",
            gps_coordinates=log.gps_coordinates if log else None,
            notes=log.notes if log else None,
        ))
    return schemas.BatchHistory(batch_id=batch.batch_id, product_name=batch.product_name,
                                status=batch.status, events=entries)


def verification_trace(db: Session, store, batch_id: str) -> schemas.VerificationTrace:
    batch = _batch(db, batch_id)
    result = schemas.VerificationTrace(is_verified=False, batch_id=batch.batch_id, status=batch.status)

    ev = db.scalar(
        select(ProductEvent)
        .where(ProductEvent.batch_ref_id == batch.id, ProductEvent.event_type == EventType.VERIFICATION)
        .order_by(ProductEvent.block_number.desc(), ProductEvent.log_index.desc())
    )
    if ev is None:
        return result

    result.is_verified = True
    result.tx_hash = ev.tx_hash
    result.event_timestamp = utc_iso(ev.block_timestamp)
    result.verifier_address = ev.actor_address

    payload = store.get_json(ev.content_address)
    cert_id = payload.get("certificateId")
    if not cert_id:
        logger.error("verification payload for batch %s is missing or invalid", batch.batch_id)
        return result

    cert = db.get(Certificate, cert_id)
    if cert is None:
        logger.error("certificate %s referenced by tx %s is not in the database", cert_id, ev.tx_hash)
        return result

    result.cert_name = cert.cert_name
    result.expiry_date = cert.expiry_date
    result.notes = cert.notes
    result.certificate_file_hash = cert.cert_hash
    result.certificate_hash_matches = cert.cert_hash == payload.get("certificateHash")
    if not result.certificate_hash_matches:
        logger.warning("certificate hash mismatch for batch %s", batch.batch_id)
    return result


def _harvest_record(ev: ProductEvent, payload: Dict[str, Any]) -> schemas.HarvestRecord:
    created = utc_iso(ev.created_at)
    return schemas.HarvestRecord(
        id=ev.id,
        batch_id=ev.batch_id,
        content_address=ev.content_address,
        tx_hash=ev.tx_hash,
        created_at=created,
        status=ev.batch.status,
        product_name=payload.get("productName") or ev.batch.product_name,
        location=payload.get("location"),
        harvest_date=payload.get("harvestDate") or created,
        quantity=payload.get("quantity"),
        unit=payload.get("unit"),
        photo_content_address=payload.get("photoIpfsHash"),
    )


def _visible_harvests(viewer: User):
    stmt = select(ProductEvent).where(ProductEvent.event_type == EventType.HARVEST)
    if viewer.role == Role.FARMER.value:
        # farmers only see what they recorded themselves
        stmt = stmt.where(ProductEvent.actor_user_id == viewer.id)
    return stmt


def harvest_records(db: Session, store, viewer_id: str,
                    batch_id: Optional[str] = None) -> List[schemas.HarvestRecord]:
    stmt = _visible_harvests(_user(db, viewer_id))
    if batch_id:
        stmt = stmt.where(ProductEvent.batch_id == batch_id)
    events = db.scalars(stmt.order_by(ProductEvent.created_at.desc(), ProductEvent.block_number.desc())).all()
    with ThreadPoolExecutor(max_workers=4) as pool:
        payloads = list(pool.map(store.get_json, [ev.content_address for ev in events]))
    return [_harvest_record(ev, payload) for ev, payload in zip(events, payloads)]


def harvest_record(db: Session, store, viewer_id: str, event_id: str) -> schemas.HarvestRecord:
    ev = db.scalar(_visible_harvests(_user(db, viewer_id)).where(ProductEvent.id == event_id))
    if ev is None:
        raise RecordNotFound(f"harvest record {event_id} not found")
    return _harvest_record(ev, store.get_json(ev.content_address))


PICKUP_READY = (BatchStatus.VERIFIED.value, BatchStatus.CONFIRMED.value)


def pickup_candidate(db: Session, store, viewer_id: str, batch_id: str) -> schemas.PickupCandidate:
    """Batch preview shown to an operator before a pickup is recorded."""
    require(_user(db, viewer_id).role, Action.PICKUP)
    batch = _batch(db, batch_id)
    if batch.status not in PICKUP_READY:
        raise StateConflict(f"batch {batch.batch_id} is {batch.status}; only VERIFIED or CONFIRMED batches can be picked up")

    harvest = _first_harvest(db, batch)
    if harvest is None:
        raise RecordNotFound(f"batch {batch.batch_id} has no harvest record")
    payload = store.get_json(harvest.content_address)
    if not payload.get("quantity") or not payload.get("unit"):
        raise RecordNotFound(f"harvest payload of batch {batch.batch_id} has no quantity")

    farmer = db.get(User, batch.farmer_id)
    return schemas.PickupCandidate(
        batch_ref_id=batch.id,
        batch_id=batch.batch_id,
        product_name=batch.product_name,
        farmer_address=farmer.actor_address if farmer else None,
        farmer_name=farmer.name if farmer else None,
        initial_quantity=payload["quantity"],
        unit=payload["unit"],
        status=batch.status,
    )


def in_transit_batches(db: Session) -> List[schemas.InTransitBatch]:
    """Batches picked up at least once and not yet received."""
    picked = select(ShipmentLog.batch_ref_id).where(ShipmentLog.status == "PICKED")
    received = select(ShipmentLog.batch_ref_id).where(ShipmentLog.status == "RECEIVED")
    batches = db.scalars(
        select(Batch).where(Batch.id.in_(picked), Batch.id.not_in(received)).order_by(Batch.created_at.asc())
    ).all()

    result = []
    for batch in batches:
        last_pick = db.scalar(
            select(ShipmentLog)
            .where(ShipmentLog.batch_ref_id == batch.id, ShipmentLog.status == "PICKED")
            .order_by(ShipmentLog.created_at.desc())
        )
        picker = db.get(User, last_pick.actor_user_id)
        harvest = _first_harvest(db, batch)
        result.append(schemas.InTransitBatch(
            id=batch.id,
            batch_id=batch.batch_id,
            product_name=batch.product_name,
            picked_by=picker.name if picker else "Unknown",
            picked_at=utc_iso(last_pick.created_at),
            farmer_name=harvest.actor_user.name if harvest and harvest.actor_user else "N/A",
            harvest_date=utc_iso(harvest.block_timestamp) if harvest else None,
            data_content_address=harvest.content_address if harvest else None,
        ))
    return result


# ---------- Seed ----------
DEMO_USERS = [
    ("Demo Farmer", "farmer@example.com", "FARMER", "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"),
    ("Demo Admin", "admin@example.com", "ADMIN", "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"),
    ("Central Hub", "central@example.com", "CENTRAL_OPERATOR", "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"),
    ("Retail Store", "retail@example.com", "RETAIL_OPERATOR", "0x90F79bf6EB2c4f870365E785982E1f101E93b906"),
]


def seed_users(db: Session) -> List[User]:
    users = []
    for name, email, role, address in DEMO_USERS:
        user = db.scalar(select(User).where(User.email == email))
        if user is None:
            user = User(name=name, email=email, role=role, actor_address=address)
            db.add(user)
        users.append(user)
    db.commit()
    return users
