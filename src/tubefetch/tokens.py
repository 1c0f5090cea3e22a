"""Signed, expiring download tokens.

A token has the shape ``v1.<expires_ms>.<hex hmac>`` where the HMAC-SHA256
covers ``<job_id>:<file_name>:<expires_ms>``. A token for one file never
unlocks another file or another job.
"""

import hashlib
import hmac
import time
from typing import Optional
from urllib.parse import quote, urlencode

TOKEN_VERSION = "v1"


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenSigner:
    def __init__(self, secret: str, ttl_s: int = 86400):
        if not secret:
            raise ValueError("A token secret is required")
        self._secret = secret.encode("utf-8")
        self.ttl_s = ttl_s

    @classmethod
    def from_config(cls, config) -> "TokenSigner":
        return cls(config.token_secret, ttl_s=config.token_ttl_s)

    def _digest(self, job_id: str, file_name: str, expires_ms: int) -> str:
        payload = f"{job_id}:{file_name}:{expires_ms}".encode("utf-8")
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def sign(self, job_id: str, file_name: str, expires_ms: Optional[int] = None) -> str:
        if expires_ms is None:
            expires_ms = _now_ms() + self.ttl_s * 1000
        return f"{TOKEN_VERSION}.{expires_ms}.{self._digest(job_id, file_name, expires_ms)}"

    def verify(
        self, job_id: str, file_name: str, token: Optional[str], now_ms: Optional[int] = None
    ) -> bool:
        if not token:
            return False

        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_VERSION:
            return False

        try:
            expires_ms = int(parts[1])
        except ValueError:
            return False
        if expires_ms <= 0:
            return False
        if (now_ms if now_ms is not None else _now_ms()) > expires_ms:
            return False

        expected = self._digest(job_id, file_name, expires_ms)
        return hmac.compare_digest(expected, parts[2])

    def build_url(self, job_id: str, file_name: str) -> str:
        """Relative download link for one artifact."""
        query = urlencode({"token": self.sign(job_id, file_name)})
        return f"/api/files/{quote(job_id)}/{quote(file_name)}?{query}"
