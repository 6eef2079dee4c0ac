import os
from pydantic import BaseModel


class Settings(BaseModel):
    db_dsn: str = os.getenv("DB_DSN", "postgresql+psycopg2://zkcred:zkcred@db:5432/zkcred")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    env: str = os.getenv("ENV", "dev")
    keys_dir: str = os.getenv("KEYS_DIR", "/app/keys")
    work_dir: str = os.getenv("WORK_DIR", "/app/work")
    jwe_alg: str = os.getenv("JWE_ALG", "A256KW")
    jwe_enc: str = os.getenv("JWE_ENC", "A256GCM")
    otlp_endpoint: str = os.getenv("OTLP_ENDPOINT", "")
    protocol_version: str = os.getenv("PROTOCOL_VERSION", "1.0.0")
    max_proof_age_ms: int = int(os.getenv("MAX_PROOF_AGE_MS", "300000"))
    require_digest_binding: bool = os.getenv("REQUIRE_DIGEST_BINDING", "1") not in ("0", "false", "no")
    challenge_ttl_seconds: int = int(os.getenv("CHALLENGE_TTL_SECONDS", "300"))
    max_message_length: int = int(os.getenv("MAX_MESSAGE_LENGTH", "1920"))
    max_b64_payload_length: int = int(os.getenv("MAX_B64_PAYLOAD_LENGTH", "1900"))
    max_matches: int = int(os.getenv("MAX_MATCHES", "4"))
    max_substring_length: int = int(os.getenv("MAX_SUBSTRING_LENGTH", "50"))
    max_claims_length: int = int(os.getenv("MAX_CLAIMS_LENGTH", "128"))
    proving_backend: str = os.getenv("PROVING_BACKEND", "")
    ui_cors_origins: str = os.getenv("UI_CORS_ORIGINS", "*")
