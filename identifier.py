import random
import string
from datetime import datetime, timezone
from typing import Union

from errors import IdentifierTooLong

WIDTH = 32


def encode_batch_id(value: str) -> bytes:
    """Pack a batch identifier into the ledger's fixed-width bytes32 slot."""
    raw = value.encode("utf-8")
    if len(raw) > WIDTH:
        raise IdentifierTooLong(f"batch id {value!r} is {len(raw)} bytes, limit is {WIDTH}")
    return raw.ljust(WIDTH, b"\x00")


def decode_batch_id(raw: Union[bytes, str]) -> str:
    if isinstance(raw, str):
        raw = bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
    return raw.rstrip(b"\x00").decode("utf-8")


def generate_batch_id(prefix: str = "BATCH") -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"{prefix}-{stamp}-{suffix}"
