"""Batch status rules. Every transition leaves PENDING exactly once."""
from enum import Enum
from typing import Dict, FrozenSet, Optional

from errors import RejectionNotesTooShort, StateConflict
from models import Batch

MIN_REJECTION_NOTES = 10


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.VERIFIED, BatchStatus.CONFIRMED, BatchStatus.REJECTED}),
    BatchStatus.VERIFIED: frozenset({BatchStatus.CONFIRMED}),
    BatchStatus.CONFIRMED: frozenset(),
    BatchStatus.REJECTED: frozenset(),
}


def can_transition(current: str, target: BatchStatus) -> bool:
    return target in TRANSITIONS[BatchStatus(current)]


def ensure_pending(batch: Batch, action: str) -> None:
    if batch.status != BatchStatus.PENDING.value:
        raise StateConflict(f"batch {batch.batch_id} is already {batch.status}; cannot {action}")


def _move(batch: Batch, target: BatchStatus, action: str) -> None:
    ensure_pending(batch, action)
    if not can_transition(batch.status, target):
        raise StateConflict(f"batch {batch.batch_id}: {batch.status} -> {target.value} is not allowed")
    batch.status = target.value


def confirm(batch: Batch, admin_id: Optional[str] = None) -> None:
    """PENDING -> CONFIRMED, once the verification event is final on the ledger."""
    _move(batch, BatchStatus.CONFIRMED, "verify")
    if admin_id:
        batch.verified_by_id = admin_id


def settle_confirmed(batch: Batch, admin_id: Optional[str] = None) -> bool:
    """Apply a verification that is already final on the ledger.

    Either writer may get here first, so an already CONFIRMED batch is not a
    conflict. Returns False when the batch left PENDING some other way.
    """
    if batch.status == BatchStatus.CONFIRMED.value:
        if admin_id and not batch.verified_by_id:
            batch.verified_by_id = admin_id
        return True
    if batch.status != BatchStatus.PENDING.value:
        return False
    confirm(batch, admin_id)
    return True


def validate_rejection_notes(notes: Optional[str]) -> str:
    cleaned = (notes or "").strip()
    if len(cleaned) < MIN_REJECTION_NOTES:
        raise RejectionNotesTooShort(f"rejection notes must be at least {MIN_REJECTION_NOTES} characters")
    return cleaned


def reject(batch: Batch, notes: Optional[str], admin_id: str) -> None:
    cleaned = validate_rejection_notes(notes)
    _move(batch, BatchStatus.REJECTED, "reject")
    batch.rejection_notes = cleaned
    batch.verified_by_id = admin_id
