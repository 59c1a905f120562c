"""Signature generation and verification."""

import re

from finhooks.common.config import settings
from finhooks.common.signing import parse_signature_header, sign, signature_header, verify

SECRET = "s3cr3t" + "0" * 26
BODY = '{"id":"evt_1","type":"charge.paid","tenantId":"m1","data":{"amountCents":10000}}'
TS = 1_760_000_000_000


def test_sign_is_deterministic_hex():
    digest = sign(SECRET, TS, BODY)
    assert digest == sign(SECRET, TS, BODY.encode("utf-8"))
    assert re.fullmatch(r"[0-9a-f]{64}", digest)


def test_header_format():
    header = signature_header(SECRET, TS, BODY)
    assert header == f"t={TS},v1={sign(SECRET, TS, BODY)}"
    assert parse_signature_header(header) == (TS, [sign(SECRET, TS, BODY)])


def test_verify_accepts_matching_signature():
    header = signature_header(SECRET, TS, BODY)
    assert verify(SECRET, header, BODY, current_ms=TS + 1_000)


def test_verify_rejects_modified_body():
    header = signature_header(SECRET, TS, BODY)
    assert not verify(SECRET, header, BODY.replace("10000", "99999"), current_ms=TS)


def test_verify_rejects_other_secret():
    header = signature_header(SECRET, TS, BODY)
    assert not verify("another-secret", header, BODY, current_ms=TS)


def test_verify_rejects_timestamp_outside_tolerance():
    header = signature_header(SECRET, TS, BODY)
    assert verify(SECRET, header, BODY, tolerance_ms=300_000, current_ms=TS + 300_000)
    assert not verify(SECRET, header, BODY, tolerance_ms=300_000, current_ms=TS + 300_001)
    assert not verify(SECRET, header, BODY, tolerance_ms=300_000, current_ms=TS - 300_001)


def test_default_tolerance_comes_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "signature_tolerance_seconds", 1)
    header = signature_header(SECRET, TS, BODY)
    assert verify(SECRET, header, BODY, current_ms=TS + 1_000)
    assert not verify(SECRET, header, BODY, current_ms=TS + 1_001)


def test_verify_rejects_tampered_timestamp():
    """The timestamp is part of the signed string, so it cannot be swapped."""

    digest = sign(SECRET, TS, BODY)
    assert not verify(SECRET, f"t={TS + 1},v1={digest}", BODY, current_ms=TS)


def test_malformed_headers():
    assert parse_signature_header("garbage") is None
    assert parse_signature_header("t=abc,v1=00") is None
    assert parse_signature_header(f"t={TS}") is None
    assert not verify(SECRET, "v1=deadbeef", BODY)
