"""
Fixed-width circuit input encoding.

Proving backends consume arrays of a fixed capacity, so every variable-length
value of a credential (the signed message, the located substrings, the
disclosures) is zero-padded to its slot width here. Capacities come from
:class:`~zkcred.models.CircuitParams`; anything that would not fit is an
error, never a silent truncation.

Slot layout shared by the match and claim arrays::

    slot 0        "x":" marker of the device-binding key
    slot 1        "y":" marker of the device-binding key
    slot 2..n     one slot per signed disclosure, in credential order
"""

import hashlib
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from zkcred.credential import ParsedCredential, bound_disclosures, find_birthdate_disclosure
from zkcred.crypto import jwk_coordinates
from zkcred.errors import CredentialError, PolicyError
from zkcred.models import CircuitParams, CurrentDate, ExtractedClaims
from zkcred.utils import P256_ORDER, b64url_to_int, bytes_to_int

logger = logging.getLogger(__name__)

KEY_MARKERS = ('"x":"', '"y":"')
RESERVED_SLOTS = len(KEY_MARKERS)
FIELD_ELEMENT_BYTES = 32


def _pad(values: Iterable[int], width: int) -> List[int]:
    out = list(values)
    return out + [0] * (width - len(out))


def _field_bytes(values: Iterable[int]) -> bytes:
    return b"".join(v.to_bytes(FIELD_ELEMENT_BYTES, "little") for v in values)


def _stringify(value: Any) -> Any:
    if isinstance(value, list):
        return [_stringify(v) for v in value]
    return str(value)


class PrepareCircuitInputs(BaseModel):
    sig_r: int
    sig_s_inverse: int
    pub_key_x: int
    pub_key_y: int
    message: List[int]
    message_length: int
    period_index: int
    matches_count: int
    match_substring: List[List[int]]
    match_length: List[int]
    match_index: List[int]
    claims: List[List[int]]
    claim_lengths: List[int]
    decode_flags: List[int]
    age_claim_index: int
    shared: ExtractedClaims

    def shared_scalars(self) -> List[int]:
        return [self.shared.key_binding_x, self.shared.key_binding_y, *self.shared.age_claim]

    def private_scalars(self) -> List[int]:
        values = [self.sig_r, self.sig_s_inverse, self.pub_key_x, self.pub_key_y]
        values += self.message
        values += [self.message_length, self.period_index, self.matches_count]
        for row in self.match_substring:
            values += row
        values += self.match_length + self.match_index
        for row in self.claims:
            values += row
        values += self.claim_lengths + self.decode_flags
        values.append(self.age_claim_index)
        return values

    def to_witness_bytes(self) -> bytes:
        return _field_bytes(self.shared_scalars() + self.private_scalars())

    def to_json_dict(self) -> Dict[str, Any]:
        return {
            "sig_r": str(self.sig_r),
            "sig_s_inverse": str(self.sig_s_inverse),
            "pubKeyX": str(self.pub_key_x),
            "pubKeyY": str(self.pub_key_y),
            "message": _stringify(self.message),
            "messageLength": self.message_length,
            "periodIndex": self.period_index,
            "matchesCount": self.matches_count,
            "matchSubstring": _stringify(self.match_substring),
            "matchLength": self.match_length,
            "matchIndex": self.match_index,
            "claims": _stringify(self.claims),
            "claimLengths": _stringify(self.claim_lengths),
            "decodeFlags": self.decode_flags,
            "ageClaimIndex": self.age_claim_index,
        }


class ShowCircuitInputs(BaseModel):
    device_key_x: int
    device_key_y: int
    sig_r: int
    sig_s_inverse: int
    message_hash: int
    claim: List[int]
    current_year: int
    current_month: int
    current_day: int

    def shared_scalars(self) -> List[int]:
        return [self.device_key_x, self.device_key_y, *self.claim]

    def private_scalars(self) -> List[int]:
        return [
            self.message_hash,
            self.sig_r,
            self.sig_s_inverse,
            self.current_year,
            self.current_month,
            self.current_day,
        ]

    def to_witness_bytes(self) -> bytes:
        return _field_bytes(self.shared_scalars() + self.private_scalars())

    def to_json_dict(self) -> Dict[str, Any]:
        return {
            "deviceKeyX": str(self.device_key_x),
            "deviceKeyY": str(self.device_key_y),
            "sig_r": str(self.sig_r),
            "sig_s_inverse": str(self.sig_s_inverse),
            "messageHash": str(self.message_hash),
            "claim": _stringify(self.claim),
            "currentYear": str(self.current_year),
            "currentMonth": str(self.current_month),
            "currentDay": str(self.current_day),
        }


def split_signature(signature: bytes):
    """Split a raw r||s ES256 signature into (r, s^-1 mod n)."""
    if len(signature) != 64:
        raise CredentialError(f"Invalid ES256 signature length: {len(signature)} (expected 64)")
    r = bytes_to_int(signature[:32])
    s = bytes_to_int(signature[32:]) % P256_ORDER
    if r == 0 or s == 0:
        raise CredentialError("Invalid ES256 signature: zero component")
    return r, pow(s, -1, P256_ORDER)


def hash_for_circuit(message: str) -> int:
    return bytes_to_int(hashlib.sha256(message.encode("utf-8")).digest()) % P256_ORDER


def extract_claims(parsed: ParsedCredential, params: CircuitParams) -> ExtractedClaims:
    raw_claims = {d.claim_name: d.claim_value for d in bound_disclosures(parsed)}

    key_x = key_y = 0
    device_key = parsed.payload.device_binding_key
    if device_key:
        try:
            key_x, key_y = b64url_to_int(device_key["x"]), b64url_to_int(device_key["y"])
        except (KeyError, ValueError) as exc:
            raise CredentialError(f"Invalid cnf.jwk in credential: {exc}", exc) from exc

    width = params.decoded_claim_length
    age_claim = [0] * width
    birthdate = find_birthdate_disclosure(parsed)
    if birthdate is not None:
        decoded = birthdate.decoded()
        if len(decoded) > width:
            raise CredentialError(
                f"Claim '{birthdate.claim_name}' decodes to {len(decoded)} bytes, capacity is {width}"
            )
        age_claim = _pad(decoded, width)

    return ExtractedClaims(
        key_binding_x=key_x,
        key_binding_y=key_y,
        age_claim=age_claim,
        raw_claims=raw_claims,
    )


def _encode_matches(parsed: ParsedCredential, params: CircuitParams):
    payload = parsed.payload_text().encode("utf-8")
    patterns = list(KEY_MARKERS)
    patterns += [d.digest[: params.max_substring_length] for d in bound_disclosures(parsed)]

    substrings, lengths, indexes = [], [], []
    for pattern in patterns:
        raw = pattern.encode("ascii")
        offset = payload.find(raw)
        substrings.append(_pad(raw, params.max_substring_length))
        # absence is signalled by a zero length, never by a negative index
        lengths.append(len(raw) if offset >= 0 else 0)
        indexes.append(offset if offset >= 0 else 0)

    empty = [0] * params.max_substring_length
    while len(substrings) < params.max_matches:
        substrings.append(list(empty))
        lengths.append(0)
        indexes.append(0)
    return substrings, lengths, indexes, len(patterns)


def _encode_claims(parsed: ParsedCredential, params: CircuitParams, require_age_claim: bool):
    empty = [0] * params.max_claims_length
    claims = [list(empty) for _ in range(RESERVED_SLOTS)]
    lengths = [0] * RESERVED_SLOTS
    flags = [0] * RESERVED_SLOTS
    age_index: Optional[int] = None

    for disclosure in bound_disclosures(parsed):
        raw = disclosure.encoded.encode("ascii")
        if len(raw) > params.max_claims_length:
            raise CredentialError(
                f"Disclosure for '{disclosure.claim_name}' is {len(raw)} bytes, "
                f"capacity is {params.max_claims_length}"
            )
        claims.append(_pad(raw, params.max_claims_length))
        lengths.append(len(raw))
        flags.append(1)
        if disclosure.is_birthdate and age_index is None:
            age_index = len(claims) - 1

    while len(claims) < params.max_matches:
        claims.append(list(empty))
        lengths.append(0)
        flags.append(0)

    if age_index is None:
        if require_age_claim:
            raise CredentialError("No birthdate claim (roc_birthday or birthdate) found in credential")
        age_index = 0
    return claims, lengths, flags, age_index


def encode_for_circuit(
    parsed: ParsedCredential,
    params: CircuitParams,
    issuer_key=None,
    require_age_claim: bool = True,
) -> PrepareCircuitInputs:
    capacity = params.max_matches - RESERVED_SLOTS
    signed = bound_disclosures(parsed)
    if len(signed) > capacity:
        raise CredentialError(
            f"Credential has {len(signed)} disclosures, circuit capacity is {capacity}"
        )
    if len(parsed.raw_payload) > params.max_b64_payload_length:
        raise CredentialError(
            f"Encoded payload is {len(parsed.raw_payload)} bytes, "
            f"capacity is {params.max_b64_payload_length}"
        )
    message = parsed.signing_input.encode("ascii")
    if len(message) > params.max_message_length:
        raise CredentialError(
            f"Signed message is {len(message)} bytes, capacity is {params.max_message_length}"
        )

    sig_r, sig_s_inverse = split_signature(parsed.signature)
    pub_x, pub_y = jwk_coordinates(issuer_key) if issuer_key is not None else (0, 0)
    substrings, match_lengths, match_indexes, count = _encode_matches(parsed, params)
    claims, claim_lengths, flags, age_index = _encode_claims(parsed, params, require_age_claim)

    logger.debug(
        "encoded circuit inputs message_length=%d matches=%d age_claim_index=%d",
        len(message),
        count,
        age_index,
    )
    return PrepareCircuitInputs(
        sig_r=sig_r,
        sig_s_inverse=sig_s_inverse,
        pub_key_x=pub_x,
        pub_key_y=pub_y,
        message=_pad(message, params.max_message_length),
        message_length=len(message),
        period_index=message.index(b"."),
        matches_count=count,
        match_substring=substrings,
        match_length=match_lengths,
        match_index=match_indexes,
        claims=claims,
        claim_lengths=claim_lengths,
        decode_flags=flags,
        age_claim_index=age_index,
        shared=extract_claims(parsed, params),
    )


def validate_date(date: CurrentDate) -> CurrentDate:
    if date.year <= 0:
        raise PolicyError(f"Invalid current date: year must be positive, got {date.year}")
    if not 1 <= date.month <= 12:
        raise PolicyError(f"Invalid current date: month must be in [1, 12], got {date.month}")
    if not 1 <= date.day <= 31:
        raise PolicyError(f"Invalid current date: day must be in [1, 31], got {date.day}")
    return date


def build_show_inputs(
    claims: ExtractedClaims,
    nonce: str,
    signature: Optional[bytes],
    current_date: CurrentDate,
    params: CircuitParams,
) -> ShowCircuitInputs:
    validate_date(current_date)
    sig_r = sig_s_inverse = message_hash = 0
    if signature is not None:
        sig_r, sig_s_inverse = split_signature(signature)
        message_hash = hash_for_circuit(nonce)
    return ShowCircuitInputs(
        device_key_x=claims.key_binding_x,
        device_key_y=claims.key_binding_y,
        sig_r=sig_r,
        sig_s_inverse=sig_s_inverse,
        message_hash=message_hash,
        claim=_pad(claims.age_claim[: params.decoded_claim_length], params.decoded_claim_length),
        current_year=current_date.year,
        current_month=current_date.month,
        current_day=current_date.day,
    )
