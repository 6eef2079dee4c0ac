from pathlib import Path
import hashlib
import hmac
import json
import os
import sys
import time

import pytest
from jwcrypto import jwk, jws

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from zkcred.backend import KeyPair, ProveResult, ProvingContext
from zkcred.credential import compute_disclosure_digest, encode_disclosure
from zkcred.crypto import KeyProvider, public_jwk_dict
from zkcred.models import CircuitParams
from zkcred.settings import Settings
from zkcred.utils import b64url


class HashBackend:
    """
    In-memory proving backend for tests.

    A proof is ``commitment || instance digest || randomness || mac``. The
    commitment hashes the inputs' shared scalars with the shared blinds, so
    prepare and show proofs over the same credential agree on it, and the MAC
    key is per circuit so a proof only verifies against its own circuit.
    """

    def __init__(self):
        self.secret = os.urandom(16)
        self.calls = []

    async def setup(self, circuit):
        self.calls.append(("setup", circuit))
        key = circuit.encode() + b":" + self.secret
        return KeyPair(proving_key=b"pk:" + key, verifying_key=b"vk:" + key)

    async def prove(self, proving_key, inputs, shared_blinds):
        self.calls.append(("prove", proving_key))
        scalars = b"".join(v.to_bytes(32, "big") for v in inputs.shared_scalars())
        commitment = hashlib.sha256(b"commit" + scalars + shared_blinds).digest()
        witness = inputs.to_witness_bytes()
        instance = commitment + hashlib.sha256(witness).digest()
        return self._proof(proving_key, instance, witness, os.urandom(32))

    async def reblind(self, proving_key, instance, witness, blinds):
        self.calls.append(("reblind", proving_key))
        return self._proof(proving_key, instance, witness, hashlib.sha256(blinds).digest())

    async def verify(self, proof, verifying_key):
        if len(proof) != 128:
            return False
        mac = hmac.new(verifying_key[3:], proof[:96], hashlib.sha256).digest()
        return hmac.compare_digest(mac, proof[96:])

    async def generate_blinds(self, count):
        return os.urandom(32 * count)

    def shared_commitment(self, proof):
        return proof[:32]

    def _proof(self, proving_key, instance, witness, randomness):
        body = instance + randomness
        proof = body + hmac.new(proving_key[3:], body, hashlib.sha256).digest()
        return ProveResult(proof=proof, instance=instance, witness=witness, shared_commitment=instance[:32])


class RejectingBackend(HashBackend):
    async def verify(self, proof, verifying_key):
        return False


class FailingBackend(HashBackend):
    async def prove(self, proving_key, inputs, shared_blinds):
        raise RuntimeError("prover crashed")


class FakeRedis:
    def __init__(self):
        self.values = {}

    def setex(self, key, ttl, value):
        self.values[key] = value

    def getdel(self, key):
        return self.values.pop(key, None)


def make_sd_jwt(
    issuer_key,
    claims,
    device_key=None,
    exp=None,
    extra_payload=None,
    unbound=(),
    alg="ES256",
):
    """Issue an SD-JWT; ``claims`` is a list of (name, value) with value None for name-only disclosures."""
    disclosures = []
    for index, (name, value) in enumerate(claims):
        salt = b64url(hashlib.sha256(f"salt-{index}-{name}".encode()).digest()[:16])
        if value is None:
            disclosures.append(encode_disclosure(salt, name))
        else:
            disclosures.append(encode_disclosure(salt, name, value))

    payload = {
        "iss": "https://issuer.example.org",
        "sub": "holder-1",
        "iat": int(time.time()),
        "_sd_alg": "sha-256",
        "_sd": [compute_disclosure_digest(d) for d in disclosures],
    }
    if exp is not None:
        payload["exp"] = exp
    if device_key is not None:
        payload["cnf"] = {"jwk": public_jwk_dict(device_key)}
    payload.update(extra_payload or {})

    raw_payload = json.dumps(payload, separators=(",", ":")).encode()
    if alg == "ES256":
        token = jws.JWS(raw_payload)
        token.add_signature(issuer_key, None, json.dumps({"alg": "ES256", "typ": "vc+sd-jwt"}))
        compact = token.serialize(compact=True)
    else:
        header = b64url(json.dumps({"alg": alg, "typ": "vc+sd-jwt"}).encode())
        compact = f"{header}.{b64url(raw_payload)}.{b64url(b'not-a-signature')}"

    extra = []
    for index, (name, value) in enumerate(unbound):
        extra.append(encode_disclosure(f"unbound-salt-{index}", name, value))
    return "~".join([compact, *disclosures, *extra]) + "~"


@pytest.fixture
def issuer_key():
    return jwk.JWK.generate(kty="EC", crv="P-256")


@pytest.fixture
def device_key():
    return jwk.JWK.generate(kty="EC", crv="P-256")


@pytest.fixture
def credential(issuer_key, device_key):
    return make_sd_jwt(
        issuer_key,
        [("roc_birthday", "1040605"), ("name", "Alice")],
        device_key=device_key,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        keys_dir=str(tmp_path / "keys"),
        work_dir=str(tmp_path / "work"),
        db_dsn=f"sqlite:///{tmp_path / 'zkcred.db'}",
    )


@pytest.fixture
def params():
    return CircuitParams()


@pytest.fixture
def backend():
    return HashBackend()


@pytest.fixture
def context(backend, params, settings):
    return ProvingContext(backend, params, settings.work_dir)


@pytest.fixture
def key_provider(settings):
    return KeyProvider(settings)


@pytest.fixture
def fake_redis():
    return FakeRedis()
