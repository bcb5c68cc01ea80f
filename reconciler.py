import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import lifecycle
from errors import ChainUnavailable
from lifecycle import BatchStatus
from ledger import LedgerEvent
from mirror import BatchIndex, upsert_product_event
from models import Batch, User
from utils import EventType, backoff_delays

logger = logging.getLogger(__name__)


class EventReconciler:
    """Background task mirroring the ledger's ProductEvent feed into the database.

    Events are handled one at a time in delivery order. Redelivery after a
    reconnect is harmless because every row is upserted by transaction hash.
    A harvest event for a batch the database has never seen (the request that
    wrote it died after the ledger write) creates the batch from the event's
    content payload.
    """

    def __init__(self, ledger, session_factory: Callable[[], Session], index: BatchIndex, content_store=None,
                 poll_interval: float = 2.0, backoff_base: float = 1.0, backoff_max: float = 60.0,
                 from_block: Optional[int] = None):
        self.ledger = ledger
        self.session_factory = session_factory
        self.index = index
        self.content_store = content_store
        self.poll_interval = poll_interval
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.cursor = from_block
        self.processed = 0
        self.adopted = 0
        self.skipped = 0
        self.failed = 0
        self.reconnects = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stream = None

    # ---------- lifecycle ----------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        with self.session_factory() as db:
            self.index.load(db)
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="event-reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("reconciler did not stop within %ss", timeout)
        self._close_stream()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def run(self) -> None:
        delays = backoff_delays(self.backoff_base, self.backoff_max)
        while not self._stop.is_set():
            try:
                if self.cursor is None:
                    self.cursor = self.ledger.latest_block()
                self._stream = self.ledger.open_event_stream(self.cursor)
                logger.info("subscribed to ledger events from block %s", self.cursor)
                delays = backoff_delays(self.backoff_base, self.backoff_max)
                self._consume()
            except ChainUnavailable as exc:
                self.reconnects += 1
                delay = next(delays)
                logger.warning("event stream lost (%s); reconnecting in %.1fs", exc, delay)
                self._stop.wait(delay)
            except Exception:
                self.reconnects += 1
                delay = next(delays)
                logger.exception("event loop failed; restarting in %.1fs", delay)
                self._stop.wait(delay)
            finally:
                self._close_stream()
        logger.info("reconciler stopped")

    def _consume(self) -> None:
        while not self._stop.is_set():
            for ev in self._stream.poll():
                if self._stop.is_set():
                    return
                self.process_event(ev)
                # resume from this block on reconnect; the upsert absorbs the overlap
                self.cursor = max(self.cursor or 0, ev.block_number)
            self._stop.wait(self.poll_interval)

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()

    # ---------- per-event ----------
    def process_event(self, ev: LedgerEvent) -> bool:
        """Mirror one ledger event. Returns False when it was skipped or failed."""
        with self.session_factory() as db:
            try:
                return self._mirror(db, ev)
            except Exception:
                db.rollback()
                self.failed += 1
                logger.exception("failed to mirror tx %s", ev.tx_hash)
                return False

    def _mirror(self, db: Session, ev: LedgerEvent) -> bool:
        batch_id = ev.batch_id
        actor_user_id = db.scalar(select(User.id).where(func.lower(User.actor_address) == ev.actor.lower()))
        ref = self.index.lookup(db, batch_id)
        if ref is None and ev.event_type == EventType.HARVEST:
            ref = self._adopt(db, ev, batch_id, actor_user_id)
        if ref is None:
            self.skipped += 1
            logger.warning("tx %s references unknown batch %r; skipped", ev.tx_hash, batch_id)
            return False

        _, created = upsert_product_event(
            db,
            tx_hash=ev.tx_hash,
            batch_ref_id=ref,
            batch_id=batch_id,
            event_type=ev.event_type,
            content_address=ev.content_address,
            actor_address=ev.actor,
            block_number=ev.block_number,
            log_index=ev.log_index,
            block_timestamp=datetime.fromtimestamp(ev.timestamp, tz=timezone.utc),
            actor_user_id=actor_user_id,
        )
        self.processed += 1
        logger.info("%s tx %s for batch %s", "mirrored" if created else "refreshed", ev.tx_hash, batch_id)

        if ev.event_type == EventType.VERIFICATION:
            self._confirm(db, ref, ev)
        return True

    def _confirm(self, db: Session, ref: str, ev: LedgerEvent) -> None:
        batch = db.get(Batch, ref)
        was = batch.status
        if lifecycle.settle_confirmed(batch):
            db.commit()
            if was != batch.status:
                logger.info("batch %s confirmed from ledger tx %s", batch.batch_id, ev.tx_hash)
        else:
            logger.warning("verification tx %s seen for %s batch %s; status kept",
                           ev.tx_hash, batch.status, batch.batch_id)

    def _adopt(self, db: Session, ev: LedgerEvent, batch_id: str, actor_user_id: Optional[str]) -> Optional[str]:
        payload = self.content_store.get_json(ev.content_address) if self.content_store is not None else {}
        farmer_id = payload.get("farmerId")
        if not farmer_id or db.get(User, farmer_id) is None:
            farmer_id = actor_user_id
        if farmer_id is None:
            logger.warning("harvest tx %s for %r has no resolvable farmer; cannot create batch",
                           ev.tx_hash, batch_id)
            return None

        batch = Batch(batch_id=batch_id, product_name=payload.get("productName") or batch_id,
                      farmer_id=farmer_id, status=BatchStatus.PENDING.value)
        db.add(batch)
        try:
            db.commit()
        except IntegrityError:
            # the request path created it in the meantime
            db.rollback()
            return self.index.lookup(db, batch_id)
        self.index.add(batch_id, batch.id)
        self.adopted += 1
        logger.info("batch %s created from ledger tx %s", batch_id, ev.tx_hash)
        return batch.id
