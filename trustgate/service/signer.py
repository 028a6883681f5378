from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from trustgate.logging import get_logger
from trustgate.service.errors import (
    BadSignatureError,
    ExpiredTokenError,
    MalformedTokenError,
)
from trustgate.storage.models import Clock, TokenKind, utcnow

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
_RESERVED_CLAIMS = frozenset({"sub", "iat", "exp", "jti", "kind", "iss"})


@dataclass(frozen=True)
class ParsedToken:
    subject: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    token_id: str
    claims: dict[str, Any] = field(default_factory=dict)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 compact tokens bound to a single configured key.

    Only ``alg=HS256`` headers are accepted; tokens declaring any other
    algorithm (including ``none``) are rejected before the signature is
    looked at. Every token carries a random ``jti`` so two tokens issued for
    the same subject in the same second never collide.
    """

    def __init__(self, secret: str, *, issuer: str = "trustgate", clock: Clock = utcnow) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._key = secret.encode()
        self.issuer = issuer
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(
        self,
        subject: str,
        claims: Optional[dict[str, Any]] = None,
        ttl: timedelta = timedelta(hours=24),
        *,
        kind: TokenKind = TokenKind.SESSION,
    ) -> str:
        now = int(self._clock().timestamp())
        payload: dict[str, Any] = {
            k: v for k, v in (claims or {}).items() if k not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "sub": subject,
                "iat": now,
                "exp": now + int(ttl.total_seconds()),
                "jti": secrets.token_hex(16),
                "kind": kind.value,
                "iss": self.issuer,
            }
        )
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def parse(self, token: str) -> ParsedToken:
        if not token or not isinstance(token, str):
            raise MalformedTokenError("empty token")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error):
            raise MalformedTokenError("undecodable header") from None
        if not isinstance(header, dict) or header.get("alg") != _HEADER["alg"]:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("token_algorithm_rejected", alg=alg)
            raise BadSignatureError("unsupported algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected, sig_b64):
            raise BadSignatureError("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error):
            raise MalformedTokenError("undecodable payload") from None
        if not isinstance(payload, dict):
            raise MalformedTokenError("payload is not an object")
        if payload.get("iss") != self.issuer:
            raise BadSignatureError("issuer mismatch")

        try:
            subject = str(payload["sub"])
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
            token_id = str(payload["jti"])
            kind = TokenKind(payload.get("kind", TokenKind.SESSION.value))
        except (KeyError, TypeError, ValueError):
            raise MalformedTokenError("missing or invalid registered claims") from None

        if expires_at <= int(self._clock().timestamp()):
            raise ExpiredTokenError("token expired")

        extra = {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS}
        return ParsedToken(
            subject=subject,
            kind=kind,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            token_id=token_id,
            claims=extra,
        )
