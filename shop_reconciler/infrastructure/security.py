import hashlib
import hmac
import secrets
import time

from shop_reconciler.core.errors import (
    AdminApiDisabledError,
    CsrfRejectedError,
    ForbiddenError,
    JanitorDisabledError,
    UnauthorizedError,
)


def secrets_match(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


class JanitorAuthenticator:
    """Shared-secret check for internal maintenance endpoints."""

    def __init__(self, secret: str | None):
        self._secret = secret or None

    def authenticate(self, provided: str | None) -> None:
        if not self._secret:
            raise JanitorDisabledError()
        if not provided:
            raise UnauthorizedError("Missing janitor secret")
        if not secrets_match(self._secret, provided):
            raise ForbiddenError("Invalid janitor secret")


class AdminAuthenticator:
    def __init__(self, enabled: bool, token: str | None):
        self._enabled = bool(enabled)
        self._token = token or None

    def authenticate(self, authorization: str | None) -> None:
        if not self._enabled or not self._token:
            raise AdminApiDisabledError()

        scheme, _, provided = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not provided.strip():
            raise UnauthorizedError("Missing bearer token")
        if not secrets_match(self._token, provided.strip()):
            raise ForbiddenError("Invalid admin token")


class CsrfVerifier:
    """Stateless HMAC tokens of the form ``{issued_at}.{nonce}.{signature}``."""

    def __init__(self, secret: str | None, max_age_seconds: int = 3600):
        self._secret = secret or None
        self._max_age_seconds = int(max_age_seconds)

    def _sign(self, issued_at: int, nonce: str) -> str:
        return hmac.new(
            self._secret.encode("utf-8"),
            f"{issued_at}.{nonce}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def issue(self, now: float | None = None) -> str:
        if not self._secret:
            raise CsrfRejectedError("CSRF secret is not configured")
        issued_at = int(now if now is not None else time.time())
        nonce = secrets.token_hex(8)
        return f"{issued_at}.{nonce}.{self._sign(issued_at, nonce)}"

    def verify(self, token: str | None, now: float | None = None) -> None:
        if not self._secret or not token:
            raise CsrfRejectedError()

        parts = token.split(".")
        if len(parts) != 3 or not parts[0].isdigit():
            raise CsrfRejectedError()
        issued_at, nonce, signature = int(parts[0]), parts[1], parts[2]

        if not secrets_match(self._sign(issued_at, nonce), signature):
            raise CsrfRejectedError()
        age = int(now if now is not None else time.time()) - issued_at
        if age < 0 or age > self._max_age_seconds:
            raise CsrfRejectedError("CSRF token expired")


class ClientAddressResolver:
    """Pick the caller address used as a rate-limit key.

    ``X-Forwarded-For`` is honored only when the direct peer is one of the
    configured proxies; the first hop from the right that is not a proxy wins.
    """

    def __init__(self, trusted_proxies: str | list[str] | None = None):
        if isinstance(trusted_proxies, str):
            trusted_proxies = trusted_proxies.split(",")
        self._trusted = frozenset(
            proxy.strip() for proxy in trusted_proxies or [] if proxy.strip()
        )

    def resolve(self, peer: str | None, forwarded_for: str | None) -> str:
        if not peer:
            return "unknown"
        if peer not in self._trusted or not forwarded_for:
            return peer

        hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
        for hop in reversed(hops):
            if hop not in self._trusted:
                return hop
        return peer
