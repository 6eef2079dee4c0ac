"""
Non-throwing wrappers for parsing and encoding.

Code that handles attacker-controlled input (a verifier pre-filtering
credentials, an API request validator) can branch on ``Ok``/``Err`` instead
of catching exceptions.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from zkcred.credential import ParsedCredential, parse_sd_jwt
from zkcred.encoder import PrepareCircuitInputs, encode_for_circuit
from zkcred.errors import ZkCredError
from zkcred.models import CircuitParams

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok = True


@dataclass(frozen=True)
class Err:
    error: ZkCredError
    ok = False

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message


Result = Union[Ok[T], Err]


def try_parse(credential: str) -> "Result[ParsedCredential]":
    try:
        return Ok(parse_sd_jwt(credential))
    except ZkCredError as exc:
        return Err(exc)


def try_encode(parsed: ParsedCredential, params: CircuitParams, issuer_key=None, require_age_claim: bool = True) -> "Result[PrepareCircuitInputs]":
    try:
        return Ok(encode_for_circuit(parsed, params, issuer_key, require_age_claim=require_age_claim))
    except ZkCredError as exc:
        return Err(exc)
