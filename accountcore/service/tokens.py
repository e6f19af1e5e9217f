from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from accountcore.config import Settings
from accountcore.logging import get_logger
from accountcore.service.errors import ExpiredTokenError, InvalidTokenError
from accountcore.storage.models import TokenKind

logger = get_logger(__name__)

# Bytes of entropy per opaque token kind; refresh tokens live longest
OPAQUE_TOKEN_BYTES = {
    TokenKind.VERIFICATION: 32,
    TokenKind.PASSWORD_RESET: 32,
    TokenKind.REFRESH: 64,
}

_ALGORITHM = "HS256"


def generate_opaque_token(kind: TokenKind) -> str:
    """Hex-encoded random token for a storage-backed slot."""
    return secrets.token_hex(OPAQUE_TOKEN_BYTES[kind])


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    username: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


class AccessTokenSigner:
    """Stateless HS256 access tokens: validity is signature plus expiry."""

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta,
        issuer: str = "accountcore",
        audience: str = "accountcore-clients",
    ) -> None:
        if not secret:
            raise ValueError("access token secret is required")
        self._secret = secret.encode()
        self.ttl = ttl
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessTokenSigner":
        return cls(
            settings.access_token_secret or "",
            ttl=settings.access_token_ttl,
            issuer=settings.access_token_issuer,
            audience=settings.access_token_audience,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, subject: str, username: str, now: datetime) -> tuple[str, datetime]:
        """Mint an access token for ``subject``; returns the token and its expiry."""
        expires_at = now + self.ttl
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "username": username,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", expires_at

    def decode(self, token: str, now: Optional[datetime] = None) -> AccessClaims:
        """Validate an access token.

        Raises InvalidTokenError for anything not minted by this signer and
        ExpiredTokenError for a genuine token whose ``exp`` is not after ``now``.
        """
        now = now or datetime.now(timezone.utc)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("malformed access token", detail={"reason": "shape"})

        # Reject algorithm confusion before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise InvalidTokenError("malformed access token", detail={"reason": "header"})
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "access_token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("invalid access token", detail={"reason": "algorithm"})

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("invalid access token", detail={"reason": "signature"})

        try:
            payload: dict[str, Any] = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise InvalidTokenError("malformed access token", detail={"reason": "payload"})
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed access token", detail={"reason": "payload"})
        if payload.get("token_type") != "access":
            raise InvalidTokenError("invalid access token", detail={"reason": "token_type"})
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidTokenError("invalid access token", detail={"reason": "audience"})
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("invalid access token", detail={"reason": "subject"})
        try:
            exp_ts = int(payload["exp"])
            iat_ts = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid access token", detail={"reason": "exp"})

        expires_at = datetime.fromtimestamp(exp_ts, tz=timezone.utc)
        if now >= expires_at:
            raise ExpiredTokenError("access token expired", detail={"expired_at": expires_at.isoformat()})
        return AccessClaims(
            subject=subject,
            username=str(payload.get("username", "")),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=expires_at,
            token_id=str(payload.get("jti", "")),
        )


__all__ = [
    "OPAQUE_TOKEN_BYTES",
    "AccessClaims",
    "AccessTokenSigner",
    "generate_opaque_token",
]
