from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from healthvia.config import Settings
from healthvia.logging import get_logger
from healthvia.service.errors import TokenExpiredError, TokenInvalidError
from healthvia.storage.models import Identity

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class TokenIssuer:
    """Stateless HS256 access/refresh tokens bound to an identity id and role.

    Access tokens carry ``sub``, ``role`` and ``email``; refresh tokens carry
    only ``sub``. Both carry a ``jti`` so they can be denylisted when a cache
    is configured.
    """

    def __init__(
        self,
        settings: Settings,
        cache=None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _base_claims(self, identity: Identity, token_type: str, expires_at: datetime) -> dict:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity.id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(self._now().timestamp()),
            "exp": int(expires_at.timestamp()),
        }

    def issue(self, identity: Identity) -> TokenPair:
        now = self._now()
        access_payload = self._base_claims(identity, ACCESS, now + self.access_ttl)
        access_payload["role"] = identity.role.value
        access_payload["email"] = identity.email
        refresh_payload = self._base_claims(identity, REFRESH, now + self.refresh_ttl)
        return TokenPair(
            access_token=self._encode_jwt(access_payload),
            refresh_token=self._encode_jwt(refresh_payload),
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def decode(self, token: Optional[str], expected_type: Optional[str] = None) -> dict[str, Any]:
        """Verify and decode a token.

        The type is checked before expiry, so a token of the wrong kind is
        reported as invalid however old it is.

        Raises:
            TokenInvalidError: malformed, wrong algorithm or signature, wrong
                issuer/audience, or wrong token type
            TokenExpiredError: valid token whose ``exp`` has passed
        """
        if not token or not isinstance(token, str):
            raise TokenInvalidError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("token malformed") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("token malformed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("token algorithm not accepted")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("token malformed") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("token malformed")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError("token audience mismatch")
        if not payload.get("sub"):
            raise TokenInvalidError("token subject missing")
        if expected_type and payload.get("token_type") != expected_type:
            raise TokenInvalidError(f"{expected_type} token required")

        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise TokenInvalidError("token expiry missing") from None
        if exp_ts <= self._now().timestamp():
            raise TokenExpiredError("token expired")
        return payload

    def validate(self, token: Optional[str]) -> bool:
        """True iff the signature checks out and the token has not expired."""
        try:
            self.decode(token)
        except TokenInvalidError:
            return False
        return True

    def remaining_seconds(self, claims: dict[str, Any]) -> int:
        try:
            return max(int(float(claims.get("exp")) - self._now().timestamp()), 0)
        except (TypeError, ValueError):
            return 0

    async def revoke(self, claims: dict[str, Any]) -> bool:
        """Denylist a decoded token for the rest of its life; False without a cache."""
        jti = claims.get("jti")
        if not self.cache or not jti:
            return False
        await self.cache.denylist_token(jti, self.remaining_seconds(claims))
        logger.info("token_denylisted", jti=jti, token_type=claims.get("token_type"))
        return True

    async def is_revoked(self, claims: dict[str, Any]) -> bool:
        jti = claims.get("jti")
        if not self.cache or not jti:
            return False
        try:
            return await self.cache.is_token_denylisted(jti)
        except Exception as exc:
            # Fail closed: an unreachable denylist must not admit revoked tokens
            logger.warning("denylist_check_failed", jti=jti, error=str(exc))
            return True
