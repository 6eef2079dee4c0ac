import asyncio
import os
import time

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature
from jwcrypto import jwk

from conftest import FailingBackend, HashBackend, RejectingBackend, make_sd_jwt
from zkcred.backend import ProvingContext, load_backend
from zkcred.crypto import decrypt_for_wallet, device_key_id
from zkcred.errors import ConfigError, CredentialError, DeviceBindingError, PolicyError, ProofError
from zkcred.models import CurrentDate, PrepareOptions, ShowOptions, VerifyOptions
from zkcred.prepare import PrepareCoordinator, credential_id
from zkcred.show import ShowCoordinator
from zkcred.utils import P256_ORDER
from zkcred.verify import Verifier

AGE_POLICY = {"age": {"gte": 18}}


class RecordingBackend(HashBackend):
    def __init__(self):
        super().__init__()
        self.inputs = []

    async def prove(self, proving_key, inputs, shared_blinds):
        self.inputs.append(inputs)
        return await super().prove(proving_key, inputs, shared_blinds)


@pytest.fixture
def preparer(context, key_provider, settings):
    return PrepareCoordinator(context, key_provider, settings)


@pytest.fixture
def shower(context, key_provider, settings):
    return ShowCoordinator(context, key_provider, settings)


@pytest.fixture
def options(issuer_key, device_key):
    return PrepareOptions(issuer_public_key=issuer_key, device_binding=True, device_key=device_key)


async def test_prepare_builds_state(preparer, credential, options, settings, key_provider, device_key):
    state = await preparer.prepare(credential, options)

    assert state.id == credential_id(credential)
    assert state.metadata.available_claims == ["roc_birthday", "name"]
    assert state.metadata.device_bound is True
    assert state.device_binding_key["x"] == device_key.export_public(as_dict=True)["x"]
    assert state.device_key_handle == device_key_id(device_key.thumbprint())
    assert key_provider.has_key(state.device_key_handle)
    assert len(state.shared_blinds) == 32
    assert state.created_at <= int(time.time() * 1000)
    assert decrypt_for_wallet(state.encrypted_credential, settings).decode() == credential
    assert credential not in state.model_dump_json()


async def test_prepare_id_is_deterministic(preparer, credential, options):
    first = await preparer.prepare(credential, options)
    second = await preparer.prepare(credential, options)
    assert first.id == second.id
    assert first.prepare_proof != second.prepare_proof


async def test_setup_runs_once_per_circuit(preparer, credential, options, backend):
    await preparer.prepare(credential, options)
    await preparer.prepare(credential, options)
    setups = [call for call in backend.calls if call[0] == "setup"]
    assert setups == [("setup", "prepare"), ("setup", "show")]


async def test_prepare_without_device_binding(preparer, credential, issuer_key):
    state = await preparer.prepare(credential, PrepareOptions(issuer_public_key=issuer_key))
    assert state.device_key_handle is None
    assert state.device_binding_key is None
    assert state.metadata.device_bound is False


async def test_prepare_accepts_issuer_key_as_pem(preparer, credential, issuer_key):
    pem = issuer_key.export_to_pem(private_key=False)
    state = await preparer.prepare(credential, PrepareOptions(issuer_public_key=pem))
    assert state.id == credential_id(credential)


async def test_prepare_requires_issuer_key(preparer, credential):
    with pytest.raises(CredentialError, match="Issuer public key not provided"):
        await preparer.prepare(credential, PrepareOptions())


async def test_prepare_rejects_wrong_issuer(preparer, credential):
    other = jwk.JWK.generate(kty="EC", crv="P-256")
    with pytest.raises(CredentialError, match="signature"):
        await preparer.prepare(credential, PrepareOptions(issuer_public_key=other))


async def test_prepare_rejects_unsupported_format(preparer, credential, issuer_key):
    with pytest.raises(CredentialError, match="format"):
        await preparer.prepare(credential, PrepareOptions(format="mdoc", issuer_public_key=issuer_key))


async def test_prepare_rejects_expired_credential(preparer, issuer_key):
    credential = make_sd_jwt(issuer_key, [("roc_birthday", "1040605")], exp=int(time.time()) - 60)
    with pytest.raises(CredentialError, match="expired"):
        await preparer.prepare(credential, PrepareOptions(issuer_public_key=issuer_key))


async def test_prepare_rejects_unbound_disclosure(preparer, issuer_key):
    credential = make_sd_jwt(issuer_key, [("roc_birthday", "1040605")], unbound=[("name", "Mallory")])
    with pytest.raises(CredentialError, match="name"):
        await preparer.prepare(credential, PrepareOptions(issuer_public_key=issuer_key))


async def test_relaxed_binding_still_hides_unbound_claims(context, key_provider, settings, issuer_key):
    relaxed = settings.model_copy(update={"require_digest_binding": False})
    preparer = PrepareCoordinator(context, key_provider, relaxed)
    credential = make_sd_jwt(issuer_key, [("roc_birthday", "1040605")], unbound=[("name", "Mallory")])
    state = await preparer.prepare(credential, PrepareOptions(issuer_public_key=issuer_key))
    assert state.metadata.available_claims == ["roc_birthday"]
    assert "name" not in state.claims.raw_claims

    with pytest.raises(PolicyError, match="name"):
        await ShowCoordinator(context, key_provider, relaxed).show(
            state, ShowOptions(policy={"name": True}, nonce="n1")
        )


async def test_unbound_birthdate_never_fills_the_age_slot(context, key_provider, settings, issuer_key):
    relaxed = settings.model_copy(update={"require_digest_binding": False})
    preparer = PrepareCoordinator(context, key_provider, relaxed)
    credential = make_sd_jwt(issuer_key, [("name", "Alice")], unbound=[("roc_birthday", "0500101")])
    with pytest.raises(CredentialError, match="No birthdate claim"):
        await preparer.prepare(credential, PrepareOptions(issuer_public_key=issuer_key))


async def test_device_key_must_match_credential(preparer, credential, issuer_key):
    stranger = jwk.JWK.generate(kty="EC", crv="P-256")
    options = PrepareOptions(issuer_public_key=issuer_key, device_binding=True, device_key=stranger)
    with pytest.raises(DeviceBindingError):
        await preparer.prepare(credential, options)


async def test_device_key_is_loaded_from_key_store(preparer, credential, issuer_key, device_key, key_provider):
    key_provider.save_key(device_key_id(device_key.thumbprint()), device_key)
    state = await preparer.prepare(credential, PrepareOptions(issuer_public_key=issuer_key, device_binding=True))
    assert state.device_key_handle == device_key_id(device_key.thumbprint())


async def test_device_binding_without_available_key(preparer, credential, issuer_key):
    with pytest.raises(DeviceBindingError):
        await preparer.prepare(credential, PrepareOptions(issuer_public_key=issuer_key, device_binding=True))


async def test_device_binding_without_cnf(preparer, issuer_key, device_key):
    credential = make_sd_jwt(issuer_key, [("roc_birthday", "1040605")])
    options = PrepareOptions(issuer_public_key=issuer_key, device_binding=True, device_key=device_key)
    with pytest.raises(DeviceBindingError):
        await preparer.prepare(credential, options)


async def test_failed_self_check_aborts_prepare(key_provider, settings, params, credential, options):
    preparer = PrepareCoordinator(ProvingContext(RejectingBackend(), params), key_provider, settings)
    with pytest.raises(ProofError, match="Prepare proof verification failed"):
        await preparer.prepare(credential, options)


async def test_rejected_prepare_leaves_no_device_key(key_provider, settings, params, credential, options, device_key):
    preparer = PrepareCoordinator(ProvingContext(RejectingBackend(), params), key_provider, settings)
    with pytest.raises(ProofError):
        await preparer.prepare(credential, options)
    assert not key_provider.has_key(device_key_id(device_key.thumbprint()))


async def test_backend_failure_is_a_proof_error(key_provider, settings, params, credential, options):
    preparer = PrepareCoordinator(ProvingContext(FailingBackend(), params), key_provider, settings)
    with pytest.raises(ProofError, match="prover crashed"):
        await preparer.prepare(credential, options)


async def test_show_and_verify_scenario(preparer, shower, context, credential, options, settings):
    state = await preparer.prepare(credential, options)
    proof = await shower.show(state, ShowOptions(policy=AGE_POLICY, nonce="n1"))

    assert proof.policy == AGE_POLICY
    assert proof.nonce == "n1"
    assert proof.version == "1.0.0"

    verifier = Verifier(context, settings)
    result = await verifier.verify(proof, AGE_POLICY, VerifyOptions(expected_nonce="n1"))
    assert result.valid, result.error
    assert result.verified_policy == AGE_POLICY

    wrong_nonce = await verifier.verify(proof, AGE_POLICY, VerifyOptions(expected_nonce="n2"))
    assert not wrong_nonce.valid
    assert "Nonce" in wrong_nonce.error

    stricter = await verifier.verify(proof, {"age": {"gte": 21}}, VerifyOptions(expected_nonce="n1"))
    assert not stricter.valid
    assert "Policy" in stricter.error


async def test_show_signature_matches_circuit_message_hash(key_provider, settings, params, credential, options, device_key):
    backend = RecordingBackend()
    context = ProvingContext(backend, params)
    state = await PrepareCoordinator(context, key_provider, settings).prepare(credential, options)
    await ShowCoordinator(context, key_provider, settings).show(state, ShowOptions(policy=AGE_POLICY, nonce="n1"))

    inputs = backend.inputs[-1]
    assert inputs.sig_r != 0
    s = pow(inputs.sig_s_inverse, -1, P256_ORDER)
    device_key.get_op_key("verify").verify(
        encode_dss_signature(inputs.sig_r, s),
        inputs.message_hash.to_bytes(32, "big"),
        ec.ECDSA(Prehashed(hashes.SHA256())),
    )


async def test_repeated_shows_are_unlinkable(preparer, shower, context, credential, options, settings):
    state = await preparer.prepare(credential, options)
    snapshot = state.model_dump()
    first = await shower.show(state, ShowOptions(policy=AGE_POLICY, nonce="n1"))
    second = await shower.show(state, ShowOptions(policy=AGE_POLICY, nonce="n2"))

    assert first.prepare_proof != second.prepare_proof
    assert first.prepare_proof != state.prepare_proof
    assert first.shared_commitment == second.shared_commitment
    assert state.model_dump() == snapshot

    verifier = Verifier(context, settings)
    assert (await verifier.verify(first)).valid
    assert (await verifier.verify(second)).valid


async def test_concurrent_shows_draw_independent_blinds(preparer, shower, credential, options):
    state = await preparer.prepare(credential, options)
    proofs = await asyncio.gather(
        *(shower.show(state, ShowOptions(policy=AGE_POLICY, nonce=f"n{i}")) for i in range(4))
    )
    assert len({p.prepare_proof for p in proofs}) == 4
    assert len({p.shared_commitment for p in proofs}) == 1


async def test_show_rejects_unsatisfiable_policy(preparer, shower, credential, options):
    state = await preparer.prepare(credential, options)
    with pytest.raises(PolicyError, match="nationality"):
        await shower.show(state, ShowOptions(policy={"nationality": {"in": ["DE"]}}, nonce="n1"))


async def test_show_rejects_invalid_date(preparer, shower, credential, options):
    state = await preparer.prepare(credential, options)
    date = CurrentDate(year=2026, month=13, day=1)
    with pytest.raises(PolicyError, match="month"):
        await shower.show(state, ShowOptions(policy=AGE_POLICY, nonce="n1", current_date=date))


async def test_show_without_device_key_material(preparer, shower, credential, options, key_provider):
    state = await preparer.prepare(credential, options)
    key_provider.delete_key(state.device_key_handle)
    with pytest.raises(DeviceBindingError):
        await shower.show(state, ShowOptions(policy=AGE_POLICY, nonce="n1"))


async def test_show_without_device_binding(preparer, shower, context, credential, issuer_key, settings):
    state = await preparer.prepare(credential, PrepareOptions(issuer_public_key=issuer_key))
    proof = await shower.show(state, ShowOptions(policy={"name": True}, nonce="n1"))
    assert (await Verifier(context, settings).verify(proof, {"name": True})).valid


async def test_independent_contexts_prepare_concurrently(key_provider, settings, params, issuer_key, device_key):
    credentials = [
        make_sd_jwt(issuer_key, [("birthdate", f"199{i}-01-01")], device_key=device_key) for i in range(3)
    ]
    preparers = [PrepareCoordinator(ProvingContext(HashBackend(), params), key_provider, settings) for _ in credentials]
    options = PrepareOptions(issuer_public_key=issuer_key, device_binding=True, device_key=device_key)
    states = await asyncio.gather(*(p.prepare(c, options) for p, c in zip(preparers, credentials)))
    assert len({state.id for state in states}) == 3


def test_context_requires_backend(params):
    with pytest.raises(ConfigError):
        ProvingContext(None, params)


def test_load_backend_errors():
    with pytest.raises(ConfigError):
        load_backend("")
    with pytest.raises(ConfigError):
        load_backend("zkcred_no_such_module:Backend")
    with pytest.raises(ConfigError):
        load_backend("os:getcwd")
    with pytest.raises(ConfigError, match="could not be created"):
        load_backend("conftest:HashBackend", curve="bn254")
    with pytest.raises(ConfigError, match="could not be created"):
        load_backend("zkcred.backend:KeyPair")


def test_load_backend_by_path():
    backend = load_backend("conftest:HashBackend")
    assert isinstance(backend, HashBackend)


async def test_unknown_circuit(context):
    with pytest.raises(ConfigError):
        await context.keys("nope")


def test_work_dir_is_created(tmp_path, params):
    work_dir = tmp_path / "ctx"
    ProvingContext(HashBackend(), params, str(work_dir))
    assert os.path.isdir(work_dir)
