from datetime import datetime, timezone
from enum import IntEnum
from typing import Iterator, Optional


class EventType(IntEnum):
    HARVEST = 1
    SHIPMENT = 2
    PICKED = 3
    RECEIVED = 4
    HANDOVER_RECEIVED = 5
    VERIFICATION = 99


EVENT_NAMES = {
    EventType.HARVEST: "Harvest",
    EventType.SHIPMENT: "Shipment",
    EventType.PICKED: "Picked",
    EventType.RECEIVED: "Received",
    EventType.HANDOVER_RECEIVED: "Received",
    EventType.VERIFICATION: "Verification",
}


def event_name(code: int) -> str:
    try:
        return EVENT_NAMES[EventType(code)]
    except ValueError:
        return f"Event Code {code}"


def short_address(address: str) -> str:
    return f"{address[:6]}..." if address else "unknown"


def placeholder_actor(address: str) -> str:
    return f"Actor ({short_address(address)})"


def utc_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    # SQLite hands back naive datetimes; they were stored as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def backoff_delays(base: float, cap: float) -> Iterator[float]:
    delay = base
    while True:
        yield delay
        delay = min(delay * 2, cap)
