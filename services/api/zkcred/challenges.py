import json
import logging

from zkcred.utils import generate_nonce, now_ts

logger = logging.getLogger(__name__)


class ChallengeManager:
    """Verifier nonces in redis. Each one is consumed by its first validation."""

    def __init__(self, redis, ttl_seconds: int = 300):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(nonce: str) -> str:
        return f"ch:{nonce}"

    def issue(self, aud: str):
        nonce = generate_nonce()
        exp = now_ts() + self.ttl_seconds
        self.redis.setex(self._key(nonce), self.ttl_seconds, json.dumps({"aud": aud, "exp": exp}))
        return {"nonce": nonce, "aud": aud, "exp": exp}

    def validate(self, nonce: str, aud: str):
        # GETDEL: two verifiers racing on one nonce cannot both read it
        value = self.redis.getdel(self._key(nonce))
        if not value:
            return False, "nonce not found"
        doc = json.loads(value)
        if doc.get("aud") != aud:
            logger.warning("challenge presented for aud=%s, issued for aud=%s", aud, doc.get("aud"))
            return False, "aud mismatch"
        if doc.get("exp", 0) < now_ts():
            return False, "expired"
        logger.debug("consumed challenge for aud=%s", aud)
        return True, "ok"
