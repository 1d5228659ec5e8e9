from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from gamcauth.config import Settings
from gamcauth.logging import get_logger
from gamcauth.service.errors import TokenInvalidError
from gamcauth.storage.models import Role, TokenKind

logger = get_logger(__name__)

INVALID_TOKEN_MESSAGE = "invalid or expired token"


@dataclass
class TokenClaims:
    """Identity carried by a signed token.

    Access tokens carry the full identity; refresh tokens only ``sub``,
    ``sid``, ``jti`` and ``token_version``.
    """

    sub: str
    sid: str
    kind: TokenKind
    email: Optional[str] = None
    role: Optional[Role] = None
    org_unit_id: Optional[int] = None
    jti: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None
    token_version: int = 1
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def session_id(self) -> str:
        return self.sid

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sub": self.sub,
            "sid": self.sid,
            "token_type": self.kind.value,
            "jti": self.jti,
            "iat": self.iat,
            "exp": self.exp,
        }
        if self.kind is TokenKind.ACCESS:
            payload.update(
                {
                    "email": self.email,
                    "role": self.role.value if self.role else None,
                    "org_unit_id": self.org_unit_id,
                }
            )
        else:
            payload["token_version"] = self.token_version
        payload.update(self.extra)
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], kind: TokenKind) -> "TokenClaims":
        role = payload.get("role")
        return cls(
            sub=str(payload["sub"]),
            sid=str(payload["sid"]),
            kind=kind,
            email=payload.get("email"),
            role=Role(role) if role else None,
            org_unit_id=payload.get("org_unit_id"),
            jti=payload.get("jti"),
            iat=payload.get("iat"),
            exp=int(payload["exp"]),
            token_version=int(payload.get("token_version", 1)),
        )


class TokenCodec:
    """HS256 signer/verifier for access and refresh tokens.

    Pure computation: no I/O, no shared state besides the settings.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self._secrets = {
            TokenKind.ACCESS: settings.jwt_secret.encode(),
            TokenKind.REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._audiences = {
            TokenKind.ACCESS: settings.jwt_audience,
            TokenKind.REFRESH: settings.jwt_refresh_audience,
        }
        self._lifetimes = {
            TokenKind.ACCESS: settings.access_token_ttl_minutes * 60,
            TokenKind.REFRESH: settings.refresh_token_ttl_minutes * 60,
        }

    def lifetime_seconds(self, kind: TokenKind) -> int:
        return self._lifetimes[kind]

    def remaining_seconds(self, claims: TokenClaims) -> int:
        if claims.exp is None:
            return 0
        return max(0, int(claims.exp - self._clock()))

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, claims: TokenClaims, kind: Optional[TokenKind] = None) -> str:
        """Sign ``claims`` as a ``kind`` token, filling jti/iat/exp when unset."""
        kind = kind or claims.kind
        claims.kind = kind
        now = int(self._clock())
        if claims.jti is None:
            claims.jti = str(uuid.uuid4())
        if claims.iat is None:
            claims.iat = now
        if claims.exp is None:
            claims.exp = now + self._lifetimes[kind]

        payload = claims.to_payload()
        payload["iss"] = self.settings.jwt_issuer
        payload["aud"] = self._audiences[kind]

        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def verify(self, token: str, kind: TokenKind) -> TokenClaims:
        payload = self._decode(token, kind)
        if payload is None:
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        return TokenClaims.from_payload(payload, kind)

    def _decode(self, token: str, kind: TokenKind) -> Optional[Dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        expected_aud = self._audiences[kind]
        if isinstance(aud, str):
            valid_aud = aud == expected_aud
        elif isinstance(aud, list):
            valid_aud = expected_aud in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if payload.get("token_type") != kind.value:
            return None
        if not payload.get("sub") or not payload.get("sid"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self.settings.jwt_leeway_seconds:
            return None
        role = payload.get("role")
        if role is not None and role not in {r.value for r in Role}:
            return None
        return payload


__all__ = ["INVALID_TOKEN_MESSAGE", "TokenClaims", "TokenCodec"]
