"""
SD-JWT credential parsing.

A credential travels as ``<header>.<payload>.<signature>~<disclosure>~...``
where each disclosure is the base64url encoding of a JSON array
``[salt, name]`` or ``[salt, name, value]``. The issuer signs only the JWT
part; disclosures are authenticated by the digest of their encoded form
appearing in the payload's ``_sd`` list.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from jwcrypto import jwk

from zkcred.crypto import verify_compact_jws
from zkcred.errors import CredentialError
from zkcred.models import CredentialMetadata
from zkcred.utils import b64url, b64url_decode, sha256

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHM = "ES256"
SUPPORTED_DIGEST_ALGORITHM = "sha-256"
BIRTHDATE_CLAIMS = ("roc_birthday", "birthdate")
RESERVED_PAYLOAD_KEYS = {"iss", "sub", "iat", "exp", "nbf", "cnf", "vct", "status"}


@dataclass(frozen=True)
class CredentialHeader:
    alg: str
    typ: Optional[str] = None
    kid: Optional[str] = None


@dataclass(frozen=True)
class CredentialPayload:
    issuer: Optional[str]
    subject: Optional[str] = None
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None
    device_binding_key: Optional[Dict[str, str]] = None
    disclosure_digests: Tuple[str, ...] = ()
    digest_algorithm: str = SUPPORTED_DIGEST_ALGORITHM
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Disclosure:
    salt: str
    claim_name: str
    claim_value: Any
    encoded: str
    digest: str

    @property
    def is_birthdate(self) -> bool:
        return self.claim_name in BIRTHDATE_CLAIMS

    def decoded(self) -> bytes:
        return b64url_decode(self.encoded)

    def is_bound(self, payload: "CredentialPayload") -> bool:
        return self.digest in payload.disclosure_digests


@dataclass(frozen=True)
class ParsedCredential:
    header: CredentialHeader
    payload: CredentialPayload
    signature: bytes
    raw_header: str
    raw_payload: str
    raw_signature: str
    disclosures: Tuple[Disclosure, ...]
    key_binding: Optional[str] = None

    @property
    def signing_input(self) -> str:
        return f"{self.raw_header}.{self.raw_payload}"

    @property
    def compact_jwt(self) -> str:
        return f"{self.signing_input}.{self.raw_signature}"

    def payload_text(self) -> str:
        return b64url_decode(self.raw_payload).decode("utf-8")


def compute_disclosure_digest(encoded: str) -> str:
    """base64url(SHA-256(encoded)), the form listed in ``_sd``."""
    return b64url(sha256(encoded.encode("ascii")))


def encode_disclosure(salt: str, claim_name: str, *value) -> str:
    if len(value) > 1:
        raise ValueError("a disclosure carries at most one value")
    parts = [salt, claim_name, *value]
    return b64url(json.dumps(parts, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def _decode_json_segment(segment: str, what: str) -> Dict[str, Any]:
    try:
        doc = json.loads(b64url_decode(segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise CredentialError(f"Failed to parse SD-JWT {what}", exc) from exc
    if not isinstance(doc, dict):
        raise CredentialError(f"Failed to parse SD-JWT {what}: expected a JSON object")
    return doc


def parse_disclosure(encoded: str) -> Disclosure:
    try:
        parsed = json.loads(b64url_decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise CredentialError(f"Failed to parse disclosure: {encoded}", exc) from exc
    if not isinstance(parsed, list) or len(parsed) not in (2, 3):
        raise CredentialError(f"Failed to parse disclosure: {encoded}")
    salt, claim_name = parsed[0], parsed[1]
    if not isinstance(salt, str):
        raise CredentialError(f"Failed to parse disclosure: {encoded}")
    claim_name = str(claim_name)
    claim_value = parsed[2] if len(parsed) == 3 else claim_name
    return Disclosure(
        salt=salt,
        claim_name=claim_name,
        claim_value=claim_value,
        encoded=encoded,
        digest=compute_disclosure_digest(encoded),
    )


def _build_payload(doc: Dict[str, Any]) -> CredentialPayload:
    digests = doc.get("_sd") or []
    if not isinstance(digests, list) or not all(isinstance(d, str) for d in digests):
        raise CredentialError("Failed to parse SD-JWT payload: _sd must be a list of digests")
    digest_alg = doc.get("_sd_alg", SUPPORTED_DIGEST_ALGORITHM)
    if digest_alg != SUPPORTED_DIGEST_ALGORITHM:
        raise CredentialError(f"Unsupported digest algorithm: {digest_alg}")
    cnf = doc.get("cnf")
    device_key = cnf.get("jwk") if isinstance(cnf, dict) else None
    return CredentialPayload(
        issuer=doc.get("iss"),
        subject=doc.get("sub"),
        issued_at=doc.get("iat"),
        expires_at=doc.get("exp"),
        device_binding_key=device_key if isinstance(device_key, dict) else None,
        disclosure_digests=tuple(digests),
        digest_algorithm=digest_alg,
        extra={k: v for k, v in doc.items() if not k.startswith("_") and k not in RESERVED_PAYLOAD_KEYS},
    )


def parse_sd_jwt(credential: str) -> ParsedCredential:
    if not isinstance(credential, str):
        raise CredentialError("Invalid SD-JWT format: expected a string")
    parts = credential.strip().split("~")
    jwt_segments = parts[0].split(".")
    if len(jwt_segments) != 3:
        raise CredentialError("Invalid SD-JWT format: expected 3 JWT segments")
    raw_header, raw_payload, raw_signature = jwt_segments

    header_doc = _decode_json_segment(raw_header, "header")
    alg = header_doc.get("alg")
    if alg != SUPPORTED_ALGORITHM:
        raise CredentialError(f"Unsupported algorithm: {alg}. Only {SUPPORTED_ALGORITHM} is supported.")
    header = CredentialHeader(alg=alg, typ=header_doc.get("typ"), kid=header_doc.get("kid"))

    payload = _build_payload(_decode_json_segment(raw_payload, "payload"))

    try:
        signature = b64url_decode(raw_signature)
    except ValueError as exc:
        raise CredentialError("Failed to decode SD-JWT signature", exc) from exc

    tail = parts[1:]
    key_binding = None
    if tail and "." in tail[-1]:
        key_binding = tail.pop()
    disclosures = tuple(parse_disclosure(segment) for segment in tail if segment)

    logger.debug("parsed sd-jwt issuer=%s disclosures=%d", payload.issuer, len(disclosures))
    return ParsedCredential(
        header=header,
        payload=payload,
        signature=signature,
        raw_header=raw_header,
        raw_payload=raw_payload,
        raw_signature=raw_signature,
        disclosures=disclosures,
        key_binding=key_binding,
    )


def _to_datetime(value) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def extract_metadata(parsed: ParsedCredential) -> CredentialMetadata:
    available: List[str] = []
    for name in parsed.payload.extra:
        if name not in available:
            available.append(name)
    for disclosure in bound_disclosures(parsed):
        if disclosure.claim_name not in available:
            available.append(disclosure.claim_name)
    return CredentialMetadata(
        issuer=parsed.payload.issuer or "unknown",
        subject=parsed.payload.subject,
        issued_at=_to_datetime(parsed.payload.issued_at),
        expires_at=_to_datetime(parsed.payload.expires_at),
        available_claims=available,
        device_bound=parsed.payload.device_binding_key is not None,
    )


def unbound_disclosures(parsed: ParsedCredential) -> List[Disclosure]:
    """Disclosures whose digest is not covered by the signed ``_sd`` list."""
    return [d for d in parsed.disclosures if not d.is_bound(parsed.payload)]


def bound_disclosures(parsed: ParsedCredential) -> List[Disclosure]:
    """Disclosures the issuer signed for; the only ones a presentation may use."""
    return [d for d in parsed.disclosures if d.is_bound(parsed.payload)]


def find_birthdate_disclosure(parsed: ParsedCredential) -> Optional[Disclosure]:
    for disclosure in bound_disclosures(parsed):
        if disclosure.is_birthdate:
            return disclosure
    return None


def verify_issuer_signature(parsed: ParsedCredential, issuer_key: jwk.JWK) -> bool:
    return verify_compact_jws(parsed.compact_jwt, issuer_key)
