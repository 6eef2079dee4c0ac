import base64
import binascii
import hashlib
import json
import os
import re
import time
from typing import Any

# Order of the P-256 scalar field.
P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551

_B64URL_CHARS = re.compile(r"[A-Za-z0-9_-]*")


def now_ts():
    return int(time.time())


def now_ms() -> int:
    return int(time.time() * 1000)


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def b64url_decode(value: str) -> bytes:
    """Decode unpadded base64url; raises ValueError on malformed input."""
    if not isinstance(value, str):
        raise ValueError("expected base64url text")
    if not _B64URL_CHARS.fullmatch(value) or len(value) % 4 == 1:
        raise ValueError("invalid base64url: unexpected character or length")
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError(f"invalid base64url: {exc}") from exc


def sha256(data) -> bytes:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).digest()


def bytes_to_int(data: bytes) -> int:
    return int.from_bytes(data, "big")


def b64url_to_int(value: str) -> int:
    return bytes_to_int(b64url_decode(value))


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def generate_nonce() -> str:
    return b64url(os.urandom(16))
