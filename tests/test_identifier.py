import re

import pytest

from errors import IdentifierTooLong
from identifier import WIDTH, decode_batch_id, encode_batch_id, generate_batch_id


@pytest.mark.parametrize("value", ["HRV-001", "", "x" * WIDTH, "HRV-20251105123000-A1B2", "panen-ubi-ç"])
def test_round_trip(value):
    raw = encode_batch_id(value)
    assert len(raw) == WIDTH
    assert decode_batch_id(raw) == value


def test_encode_pads_with_zero_bytes():
    assert encode_batch_id("AB") == b"AB" + b"\x00" * 30


def test_decode_accepts_hex_string():
    hexed = "0x" + encode_batch_id("HRV-001").hex()
    assert decode_batch_id(hexed) == "HRV-001"


def test_too_long_identifier_is_refused():
    with pytest.raises(IdentifierTooLong):
        encode_batch_id("x" * (WIDTH + 1))


def test_width_is_measured_in_bytes_not_characters():
    # 11 three-byte characters = 33 bytes
    with pytest.raises(IdentifierTooLong):
        encode_batch_id("€" * 11)


def test_generated_ids_fit_the_ledger_slot():
    batch_id = generate_batch_id("HRV")
    assert re.fullmatch(r"HRV-\d{14}-[A-Z0-9]{4}", batch_id)
    assert decode_batch_id(encode_batch_id(batch_id)) == batch_id
