"""
Verifier side of the presentation protocol.

Verification never raises: untrusted proofs are reported through
:class:`~zkcred.models.VerificationResult`. The cheap checks (version,
freshness, nonce, policy) run first and short-circuit before any call into
the proving backend.
"""

import json
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from zkcred.backend import PREPARE_CIRCUIT, SHOW_CIRCUIT, ProvingContext
from zkcred.errors import VerificationError, ZkCredError
from zkcred.models import Policy, Proof, SerializedProof, VerificationResult, VerifyOptions
from zkcred.policy import matches
from zkcred.settings import Settings
from zkcred.telemetry import get_tracer
from zkcred.utils import b64url, b64url_decode, now_ms

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

ProofInput = Union[Proof, SerializedProof, dict, str]


def serialize_proof(proof: Proof) -> SerializedProof:
    return SerializedProof(
        prepare_proof=b64url(proof.prepare_proof),
        show_proof=b64url(proof.show_proof),
        shared_commitment=b64url(proof.shared_commitment),
        policy=proof.policy,
        nonce=proof.nonce,
        timestamp=proof.timestamp,
        version=proof.version,
    )


def deserialize_proof(value: ProofInput) -> Proof:
    """Accepts a :class:`Proof`, its serialized model, a dict or JSON text."""
    if isinstance(value, Proof):
        return value
    try:
        if isinstance(value, str):
            value = json.loads(value)
        if isinstance(value, dict):
            value = SerializedProof.model_validate(value)
        if not isinstance(value, SerializedProof):
            raise VerificationError(f"Cannot deserialize proof from {type(value).__name__}")
        return Proof(
            prepare_proof=b64url_decode(value.prepare_proof),
            show_proof=b64url_decode(value.show_proof),
            shared_commitment=b64url_decode(value.shared_commitment),
            policy=value.policy,
            nonce=value.nonce,
            timestamp=value.timestamp,
            version=value.version,
        )
    except (ValidationError, ValueError) as exc:
        raise VerificationError(f"Malformed proof: {exc}", exc) from exc


def _fail(error: str, proof: Optional[Proof] = None) -> VerificationResult:
    return VerificationResult(valid=False, error=error, timestamp=proof.timestamp if proof else None)


def quick_verify(
    proof: ProofInput,
    expected_policy: Optional[Policy] = None,
    options: Optional[VerifyOptions] = None,
    version: Optional[str] = None,
) -> VerificationResult:
    options = options or VerifyOptions()
    version = version or Settings().protocol_version
    try:
        proof = deserialize_proof(proof)
    except VerificationError as exc:
        return _fail(str(exc))

    if proof.version != version:
        return _fail(f"Unsupported proof version: {proof.version}", proof)
    age = now_ms() - proof.timestamp
    if age > options.max_proof_age_ms:
        return _fail(f"Proof expired ({age}ms old, max {options.max_proof_age_ms}ms)", proof)
    if options.expected_nonce is not None and proof.nonce != options.expected_nonce:
        return _fail("Nonce mismatch", proof)
    if expected_policy is not None:
        result = matches(expected_policy, proof.policy)
        if not result.valid:
            return _fail(f"Policy mismatch: {result.error}", proof)
    return VerificationResult(valid=True, verified_policy=proof.policy, timestamp=proof.timestamp)


class Verifier:
    def __init__(self, context: ProvingContext, settings: Optional[Settings] = None):
        self.context = context
        self.settings = settings or Settings()

    async def verify(
        self,
        proof: ProofInput,
        expected_policy: Optional[Policy] = None,
        options: Optional[VerifyOptions] = None,
    ) -> VerificationResult:
        with tracer.start_as_current_span("zkcred.verify") as span:
            result = await self._verify(proof, expected_policy, options)
            span.set_attribute("zkcred.valid", result.valid)
            if not result.valid:
                logger.info("proof rejected: %s", result.error)
            return result

    async def _verify(self, proof: Any, expected_policy, options) -> VerificationResult:
        if options is None:
            options = VerifyOptions(max_proof_age_ms=self.settings.max_proof_age_ms)
        checked = quick_verify(proof, expected_policy, options, self.settings.protocol_version)
        if not checked.valid:
            return checked
        proof = deserialize_proof(proof)

        try:
            if not await self.context.verify(PREPARE_CIRCUIT, proof.prepare_proof):
                return _fail("Prepare proof verification failed", proof)
            if not await self.context.verify(SHOW_CIRCUIT, proof.show_proof):
                return _fail("Show proof verification failed", proof)
            prepare_commitment = self.context.shared_commitment(proof.prepare_proof)
            show_commitment = self.context.shared_commitment(proof.show_proof)
        except ZkCredError as exc:
            return _fail(f"Cryptographic verification error: {exc}", proof)
        except Exception as exc:
            logger.warning("unexpected verification failure: %s", exc)
            return _fail(f"Cryptographic verification error: {exc}", proof)

        if not (prepare_commitment == show_commitment == proof.shared_commitment):
            return _fail("Shared commitment mismatch between prepare and show proofs", proof)
        return checked
