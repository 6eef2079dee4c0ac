import asyncio
import logging
from typing import List, Optional

from jwcrypto.common import JWException
from pydantic import ValidationError

from zkcred.backend import ProvingContext
from zkcred.crypto import KeyProvider, decrypt_for_wallet
from zkcred.errors import CredentialError, StorageError
from zkcred.models import PreparedState, PrepareOptions, Proof, ShowOptions
from zkcred.prepare import PrepareCoordinator
from zkcred.settings import Settings
from zkcred.show import ShowCoordinator
from zkcred.storage import StorageAdapter

logger = logging.getLogger(__name__)


class HolderWallet:
    """Prepared credentials of one holder, persisted through a storage adapter."""

    def __init__(self, context: ProvingContext, storage: StorageAdapter, settings: Settings, key_provider: Optional[KeyProvider] = None):
        self.storage = storage
        self.settings = settings
        self.keys = key_provider or KeyProvider(settings)
        self.preparer = PrepareCoordinator(context, self.keys, settings)
        self.shower = ShowCoordinator(context, self.keys, settings)

    async def prepare(self, credential: str, options: Optional[PrepareOptions] = None) -> PreparedState:
        # written only once prepare has returned, i.e. after the self-check
        state = await self.preparer.prepare(credential, options)
        await asyncio.to_thread(self.storage.set, state.id, state.model_dump_json().encode("utf-8"))
        logger.info("stored prepared credential id=%s", state.id)
        return state

    def get(self, credential_id: str) -> Optional[PreparedState]:
        raw = self.storage.get(credential_id)
        if raw is None:
            return None
        try:
            return PreparedState.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageError(f"Stored state for {credential_id} is corrupt", exc) from exc

    def list(self) -> List[PreparedState]:
        states = []
        for key in self.storage.keys():
            state = self.get(key)
            if state is not None:
                states.append(state)
        return states

    async def show(self, credential_id: str, options: ShowOptions) -> Proof:
        state = await asyncio.to_thread(self.get, credential_id)
        if state is None:
            raise CredentialError(f"No prepared credential with id {credential_id}")
        return await self.shower.show(state, options)

    def delete(self, credential_id: str) -> bool:
        state = self.get(credential_id)
        if state is None:
            return False
        if state.device_key_handle and not self._key_in_use(state.device_key_handle, credential_id):
            self.keys.delete_key(state.device_key_handle)
        self.storage.delete(credential_id)
        logger.info("deleted prepared credential id=%s", credential_id)
        return True

    def _key_in_use(self, handle: str, excluding: str) -> bool:
        # one device key can bind several credentials
        return any(s.device_key_handle == handle for s in self.list() if s.id != excluding)

    def decrypt_credential(self, state: PreparedState) -> str:
        try:
            return decrypt_for_wallet(state.encrypted_credential, self.settings).decode("utf-8")
        except (JWException, ValueError) as exc:
            raise CredentialError("Failed to decrypt stored credential", exc) from exc
