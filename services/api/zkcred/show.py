import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from jwcrypto import jwk
from jwcrypto.common import JWException

from zkcred.backend import PREPARE_CIRCUIT, SHOW_CIRCUIT, ProvingContext
from zkcred.crypto import KeyProvider, sign_nonce, verify_nonce_signature
from zkcred.encoder import build_show_inputs, validate_date
from zkcred.errors import DeviceBindingError, ProofError
from zkcred.models import CurrentDate, PreparedState, Proof, ShowOptions
from zkcred.policy import can_satisfy, parse_policy
from zkcred.settings import Settings
from zkcred.telemetry import get_tracer
from zkcred.utils import now_ms

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


def today() -> CurrentDate:
    now = datetime.now(timezone.utc)
    return CurrentDate(year=now.year, month=now.month, day=now.day)


class ShowCoordinator:
    """Builds one unlinkable presentation from a prepared credential."""

    def __init__(self, context: ProvingContext, key_provider: KeyProvider, settings: Optional[Settings] = None):
        self.context = context
        self.keys = key_provider
        self.settings = settings or key_provider.settings

    async def show(self, state: PreparedState, options: ShowOptions) -> Proof:
        with tracer.start_as_current_span("zkcred.show"):
            return await self._show(state, options)

    async def _show(self, state: PreparedState, options: ShowOptions) -> Proof:
        parse_policy(options.policy)
        can_satisfy(options.policy, state.metadata.available_claims)
        current_date = validate_date(options.current_date or today())

        # every presentation draws its own blinds; reusing them links proofs
        blinds = await self.context.generate_blinds(1)
        reblinded = await self.context.reblind(PREPARE_CIRCUIT, state.prepare_instance, state.prepare_witness, blinds)

        signature = await asyncio.to_thread(self._sign_nonce, state, options.nonce)
        inputs = build_show_inputs(state.claims, options.nonce, signature, current_date, self.context.params)
        result = await self.context.prove(SHOW_CIRCUIT, inputs, state.shared_blinds)

        if result.shared_commitment != reblinded.shared_commitment:
            raise ProofError("Show proof commitment does not match the prepared credential")

        logger.info("built presentation for credential id=%s", state.id)
        return Proof(
            prepare_proof=reblinded.proof,
            show_proof=result.proof,
            shared_commitment=reblinded.shared_commitment,
            policy=options.policy,
            nonce=options.nonce,
            timestamp=now_ms(),
            version=self.settings.protocol_version,
        )

    def _sign_nonce(self, state: PreparedState, nonce: str) -> Optional[bytes]:
        if not state.device_key_handle:
            return None
        if not state.device_binding_key:
            raise DeviceBindingError("Prepared credential has a device key handle but no device public key")
        try:
            private_key = self.keys.load_key(state.device_key_handle)
        except (OSError, JWException, ValueError) as exc:
            raise DeviceBindingError("Device private key is not available", exc) from exc

        signature = sign_nonce(nonce, private_key)
        public_key = jwk.JWK(**state.device_binding_key)
        if not verify_nonce_signature(nonce, signature, public_key):
            raise DeviceBindingError("Device signature over the nonce failed self-verification")
        return signature
