"""HMAC signatures for time-limited storage URLs.

A signed request is valid while ``now <= expires_at`` and the signature
equals ``HMAC-SHA256(secret, "{path}:{method}:{expires_at}")`` as lowercase
hex. Nothing is persisted: validity is recomputed from the secret and the
query parameters on every request.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from urllib.parse import quote

FALLBACK_SECRET = "fallback-secret-do-not-use-in-prod"


def now_s() -> int:
    return int(time.time())


def canonical_message(path: str, method: str, expires_at: int) -> str:
    return f"{path}:{method}:{expires_at}"


def parse_expires(value: object) -> int | None:
    """Return ``value`` as epoch seconds, or None when it is not an integer."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class SignatureCodec:
    def __init__(self, secret: str) -> None:
        self._key = (secret or FALLBACK_SECRET).encode("utf-8")

    def sign(self, path: str, method: str, expires_at: int) -> str:
        message = canonical_message(path, method, expires_at).encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def verify(
        self,
        path: str,
        method: str,
        expires: object,
        signature: object,
        now: int | None = None,
    ) -> bool:
        # Expiry is checked before any HMAC work.
        expires_at = parse_expires(expires)
        if expires_at is None:
            return False
        if (now_s() if now is None else now) > expires_at:
            return False
        if not isinstance(signature, str) or not signature:
            return False
        expected = self.sign(path, method, expires_at)
        return hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii"))


@dataclass(frozen=True)
class SignedURL:
    url: str
    expires_at: int


class UrlSigner:
    def __init__(self, codec: SignatureCodec, base_url: str) -> None:
        self.codec = codec
        self.base_url = base_url.rstrip("/")

    def build_signed_url(
        self, base_path: str, method: str, ttl_s: int, now: int | None = None
    ) -> SignedURL:
        expires_at = (now_s() if now is None else now) + int(ttl_s)
        signature = self.codec.sign(base_path, method, expires_at)
        # Routing hands the endpoint the decoded path, so the unquoted form is signed.
        url = (
            f"{self.base_url}{quote(base_path, safe='/')}"
            f"?expires={expires_at}&signature={signature}"
        )
        return SignedURL(url=url, expires_at=expires_at)
