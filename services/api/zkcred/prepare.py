"""
Prepare phase: run once per credential.

Parses and checks the credential, encodes it for the prepare circuit, proves
it, and self-verifies the proof. The returned :class:`PreparedState` is only
built after the self-check succeeds, so a failure or cancellation at any
earlier step leaves nothing behind for the caller to record.
"""

import asyncio
import logging
from typing import Optional, Tuple

from jwcrypto import jwk
from jwcrypto.common import JWException

from zkcred.backend import PREPARE_CIRCUIT, SHOW_CIRCUIT, ProvingContext
from zkcred.credential import (
    ParsedCredential,
    extract_metadata,
    parse_sd_jwt,
    unbound_disclosures,
    verify_issuer_signature,
)
from zkcred.crypto import KeyProvider, device_key_id, encrypt_for_wallet, load_public_key, public_jwk_dict, thumbprint
from zkcred.encoder import encode_for_circuit
from zkcred.errors import CredentialError, DeviceBindingError, ProofError
from zkcred.models import PreparedState, PrepareOptions
from zkcred.settings import Settings
from zkcred.telemetry import get_tracer
from zkcred.utils import b64url, now_ms, now_ts, sha256

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


def credential_id(credential: str) -> str:
    return b64url(sha256(credential)[:16])


class PrepareCoordinator:
    def __init__(self, context: ProvingContext, key_provider: KeyProvider, settings: Settings):
        self.context = context
        self.keys = key_provider
        self.settings = settings

    async def prepare(self, credential: str, options: Optional[PrepareOptions] = None) -> PreparedState:
        options = options or PrepareOptions()
        with tracer.start_as_current_span("zkcred.prepare"):
            return await self._prepare(credential, options)

    async def _prepare(self, credential: str, options: PrepareOptions) -> PreparedState:
        if options.format != "sd-jwt":
            raise CredentialError(
                f"Unsupported credential format: {options.format}. Only 'sd-jwt' is currently supported."
            )
        parsed = parse_sd_jwt(credential)
        self._check_validity(parsed)
        metadata = extract_metadata(parsed)

        issuer_key = self._resolve_issuer_key(parsed, options)
        device_binding_key, device_handle, new_device_key = self._resolve_device_key(parsed, options)

        inputs = encode_for_circuit(
            parsed, self.context.params, issuer_key, require_age_claim=options.require_age_claim
        )

        await self.context.keys(PREPARE_CIRCUIT)
        await self.context.keys(SHOW_CIRCUIT)
        shared_blinds = await self.context.generate_blinds(1)
        logger.info("proving prepare circuit for issuer=%s", metadata.issuer)
        result = await self.context.prove(PREPARE_CIRCUIT, inputs, shared_blinds)

        if not await self.context.verify(PREPARE_CIRCUIT, result.proof):
            raise ProofError("Prepare proof verification failed")

        if new_device_key is not None:
            await asyncio.to_thread(self.keys.save_key, device_handle, new_device_key)
        encrypted = await asyncio.to_thread(encrypt_for_wallet, credential.encode("utf-8"), self.settings)

        metadata = metadata.model_copy(update={"device_bound": device_binding_key is not None})
        state = PreparedState(
            id=credential_id(credential),
            encrypted_credential=encrypted,
            metadata=metadata,
            claims=inputs.shared,
            device_binding_key=device_binding_key,
            device_key_handle=device_handle,
            prepare_proof=result.proof,
            prepare_instance=result.instance,
            prepare_witness=result.witness,
            shared_blinds=shared_blinds,
            created_at=now_ms(),
        )
        logger.info("prepared credential id=%s claims=%s", state.id, metadata.available_claims)
        return state

    def _check_validity(self, parsed: ParsedCredential):
        expires_at = parsed.payload.expires_at
        if isinstance(expires_at, (int, float)) and expires_at < now_ts():
            raise CredentialError("Credential has expired")
        if self.settings.require_digest_binding:
            unbound = unbound_disclosures(parsed)
            if unbound:
                names = ", ".join(d.claim_name for d in unbound)
                raise CredentialError(f"Disclosure digest not found in signed payload for: {names}")

    def _resolve_issuer_key(self, parsed: ParsedCredential, options: PrepareOptions) -> jwk.JWK:
        if options.issuer_public_key is None:
            raise CredentialError("Issuer public key not provided and could not be resolved")
        issuer_key = load_public_key(options.issuer_public_key)
        if not verify_issuer_signature(parsed, issuer_key):
            raise CredentialError("Issuer signature verification failed")
        return issuer_key

    def _resolve_device_key(
        self, parsed: ParsedCredential, options: PrepareOptions
    ) -> Tuple[Optional[dict], Optional[str], Optional[jwk.JWK]]:
        """Bound public key and store handle, plus a supplied private key that is not saved yet."""
        if not options.device_binding:
            return None, None, None
        bound = parsed.payload.device_binding_key
        if not bound:
            raise DeviceBindingError("Device binding requested but the credential carries no cnf.jwk")
        try:
            bound_thumbprint = thumbprint(bound)
        except (JWException, ValueError, TypeError) as exc:
            raise CredentialError(f"Invalid cnf.jwk in credential: {exc}", exc) from exc
        kid = device_key_id(bound_thumbprint)

        if options.device_key is not None:
            try:
                key = options.device_key if isinstance(options.device_key, jwk.JWK) else jwk.JWK(**options.device_key)
            except (JWException, ValueError, TypeError) as exc:
                raise DeviceBindingError(f"Invalid device key: {exc}", exc) from exc
            if not key.has_private:
                raise DeviceBindingError("Device key must include the private part")
            if key.thumbprint() != bound_thumbprint:
                raise DeviceBindingError("Device key does not match the credential's cnf.jwk")
            return public_jwk_dict(jwk.JWK(**bound)), kid, key
        if not self.keys.has_key(kid):
            raise DeviceBindingError("No device private key available for the credential's cnf.jwk")
        return public_jwk_dict(jwk.JWK(**bound)), kid, None
