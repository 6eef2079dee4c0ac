import asyncio
import logging

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from zkcred import storage as storage_mod
from zkcred import telemetry
from zkcred.backend import ProvingContext
from zkcred.challenges import ChallengeManager
from zkcred.crypto import KeyProvider
from zkcred.errors import (
    ConfigError,
    CredentialError,
    DeviceBindingError,
    PolicyError,
    ProofError,
    StorageError,
    VerificationError,
    ZkCredError,
)
from zkcred.models import (
    ChallengeResponse,
    CredentialsResponse,
    PrepareOptions,
    PrepareRequest,
    PrepareResponse,
    SerializedProof,
    ShowOptions,
    ShowRequest,
    VerificationResult,
    VerifyOptions,
    VerifyRequest,
)
from zkcred.settings import Settings
from zkcred.utils import now_ts
from zkcred.verify import Verifier, serialize_proof
from zkcred.wallet import HolderWallet

logger = logging.getLogger(__name__)

STATUS_CODES = {
    CredentialError: 400,
    PolicyError: 400,
    DeviceBindingError: 400,
    VerificationError: 400,
    ProofError: 500,
    StorageError: 500,
    ConfigError: 503,
}


def status_for(exc: ZkCredError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def create_app(settings=None, backend=None, storage=None, redis=None) -> FastAPI:
    """Build the API; run with ``uvicorn --factory zkcred.main:create_app``."""
    settings = settings or Settings()
    telemetry.setup_otel(settings)
    app = FastAPI(title="zkcred HTTP v1", version=settings.protocol_version)
    origins = [origin.strip() for origin in settings.ui_cors_origins.split(",") if origin.strip()]
    if not origins:
        origins = ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = None
    if storage is None:
        engine, Session = storage_mod.init_db(settings)
        storage = storage_mod.SqlStorage(Session)
    if redis is None:
        redis = storage_mod.init_redis(settings)

    context = ProvingContext.from_settings(settings, backend)
    wallet = HolderWallet(context, storage, settings, KeyProvider(settings))
    verifier = Verifier(context, settings)
    challenge_mgr = ChallengeManager(redis, settings.challenge_ttl_seconds)
    app.state.wallet = wallet
    app.state.verifier = verifier
    app.state.challenges = challenge_mgr

    @app.exception_handler(ZkCredError)
    async def zkcred_error_handler(request: Request, exc: ZkCredError):
        status = status_for(exc)
        if status >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})

    @app.post("/v1/verifier/challenge", response_model=ChallengeResponse)
    def verifier_challenge(aud: str = Body(..., embed=True)):
        return challenge_mgr.issue(aud)

    @app.post("/v1/verifier/verify", response_model=VerificationResult)
    async def verifier_verify(req: VerifyRequest):
        ok, why = await asyncio.to_thread(challenge_mgr.validate, req.proof.nonce, req.aud)
        if not ok:
            raise HTTPException(400, f"challenge invalid: {why}")
        options = VerifyOptions(max_proof_age_ms=settings.max_proof_age_ms, expected_nonce=req.proof.nonce)
        return await verifier.verify(req.proof, req.expected_policy, options)

    @app.post("/v1/holder/prepare", response_model=PrepareResponse)
    async def holder_prepare(req: PrepareRequest):
        options = PrepareOptions(
            issuer_public_key=req.issuer_public_key,
            device_binding=req.device_binding,
            device_key=req.device_key,
        )
        state = await wallet.prepare(req.credential, options)
        return PrepareResponse(id=state.id, metadata=state.metadata)

    @app.post("/v1/holder/credentials/{credential_id}/show", response_model=SerializedProof)
    async def holder_show(credential_id: str, req: ShowRequest):
        if await asyncio.to_thread(wallet.get, credential_id) is None:
            raise HTTPException(404, "credential not found")
        proof = await wallet.show(
            credential_id, ShowOptions(policy=req.policy, nonce=req.nonce, current_date=req.current_date)
        )
        return serialize_proof(proof)

    @app.get("/v1/holder/credentials", response_model=CredentialsResponse)
    def holder_credentials():
        states = wallet.list()
        return CredentialsResponse(
            credentials=[PrepareResponse(id=state.id, metadata=state.metadata) for state in states]
        )

    @app.delete("/v1/holder/credentials/{credential_id}")
    def holder_delete(credential_id: str):
        if not wallet.delete(credential_id):
            raise HTTPException(404, "credential not found")
        return {"ok": True}

    @app.get("/healthz")
    def healthz():
        if engine is not None:
            storage_mod.health_check(engine)
        return {"ok": True, "ts": now_ts()}

    return app
