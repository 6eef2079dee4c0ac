import logging
import os
from typing import Any, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature, encode_dss_signature
from jwcrypto import jwe, jwk, jws
from jwcrypto.common import JWException

from zkcred.errors import CredentialError, DeviceBindingError
from zkcred.settings import Settings
from zkcred.utils import b64url_to_int, bytes_to_int, sha256

logger = logging.getLogger(__name__)

WALLET_KEY_ID = "wallet#enc"


class KeyProvider:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.store_dir = settings.keys_dir
        os.makedirs(self.store_dir, exist_ok=True)

    def _path(self, kid: str) -> str:
        return os.path.join(self.store_dir, f"{kid}.json")

    def save_key(self, kid: str, key: jwk.JWK):
        with open(self._path(kid), "w", encoding="utf-8") as handle:
            handle.write(key.export(private_key=True))

    def load_key(self, kid: str) -> jwk.JWK:
        with open(self._path(kid), encoding="utf-8") as handle:
            return jwk.JWK.from_json(handle.read())

    def has_key(self, kid: str) -> bool:
        return os.path.exists(self._path(kid))

    def delete_key(self, kid: str):
        try:
            os.unlink(self._path(kid))
        except FileNotFoundError:
            pass

    def wallet_key(self) -> jwk.JWK:
        try:
            return self.load_key(WALLET_KEY_ID)
        except FileNotFoundError:
            key = jwk.JWK.generate(kty="oct", size=256)
            self.save_key(WALLET_KEY_ID, key)
            return key


def device_key_id(thumbprint: str) -> str:
    return f"device#{thumbprint}"


def load_public_key(value: Any) -> jwk.JWK:
    """Accept a JWK object, a JWK dict or JSON text, or a PEM public key."""
    try:
        if isinstance(value, jwk.JWK):
            key = value
        elif isinstance(value, dict):
            key = jwk.JWK(**value)
        elif isinstance(value, (bytes, str)):
            raw = value.encode() if isinstance(value, str) else value
            if raw.lstrip().startswith(b"-----BEGIN"):
                key = jwk.JWK.from_pem(raw)
            else:
                key = jwk.JWK.from_json(raw.decode())
        else:
            raise TypeError(f"unsupported key type {type(value).__name__}")
    except (JWException, ValueError, TypeError) as exc:
        raise CredentialError(f"Invalid public key: {exc}", exc) from exc
    if key.get("kty") != "EC" or key.get("crv") != "P-256":
        raise CredentialError("Public key must be an EC P-256 key")
    return key


def public_jwk_dict(key: jwk.JWK) -> dict:
    return {k: v for k, v in key.export_public(as_dict=True).items() if k in ("kty", "crv", "x", "y")}


def jwk_coordinates(key) -> Tuple[int, int]:
    doc = key.export_public(as_dict=True) if isinstance(key, jwk.JWK) else key
    try:
        return b64url_to_int(doc["x"]), b64url_to_int(doc["y"])
    except (KeyError, ValueError) as exc:
        raise CredentialError(f"Invalid EC key coordinates: {exc}", exc) from exc


def thumbprint(key) -> str:
    if not isinstance(key, jwk.JWK):
        key = jwk.JWK(**key)
    return key.thumbprint()


def verify_compact_jws(compact: str, public_key: jwk.JWK) -> bool:
    token = jws.JWS()
    try:
        token.deserialize(compact)
        token.verify(public_key, alg="ES256")
    except (JWException, ValueError) as exc:
        logger.debug("jws verification failed: %s", exc)
        return False
    return True


def sign_nonce(nonce: str, key: jwk.JWK) -> bytes:
    """ECDSA over SHA-256(nonce), the digest the show circuit checks; returns raw r||s."""
    try:
        der = key.get_op_key("sign").sign(sha256(nonce), ec.ECDSA(Prehashed(hashes.SHA256())))
    except (JWException, ValueError, TypeError, AttributeError) as exc:
        raise DeviceBindingError(f"Failed to sign nonce with device key: {exc}", exc) from exc
    r, s = decode_dss_signature(der)
    return r.to_bytes(32, "big") + s.to_bytes(32, "big")


def verify_nonce_signature(nonce: str, signature: bytes, public_key: jwk.JWK) -> bool:
    if len(signature) != 64:
        return False
    der = encode_dss_signature(bytes_to_int(signature[:32]), bytes_to_int(signature[32:]))
    try:
        public_key.get_op_key("verify").verify(der, sha256(nonce), ec.ECDSA(Prehashed(hashes.SHA256())))
    except (InvalidSignature, JWException, ValueError) as exc:
        logger.debug("nonce signature verification failed: %s", exc)
        return False
    return True


def encrypt_for_wallet(plaintext: bytes, settings: Settings) -> str:
    key = KeyProvider(settings).wallet_key()
    protected = {"alg": settings.jwe_alg, "enc": settings.jwe_enc}
    envelope = jwe.JWE(plaintext=plaintext, protected=protected)
    envelope.add_recipient(key)
    return envelope.serialize(compact=True)


def decrypt_for_wallet(compact: str, settings: Settings) -> bytes:
    key = KeyProvider(settings).wallet_key()
    envelope = jwe.JWE()
    envelope.deserialize(compact)
    envelope.decrypt(key)
    return envelope.payload
