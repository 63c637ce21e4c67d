from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from pmoguard.config import MIN_SECRET_BYTES, Settings
from pmoguard.logging import get_logger
from pmoguard.service.errors import InvalidTokenError

logger = get_logger(__name__)


class TokenService:
    """Stateless HS256 identity tokens carrying only ``sub`` and ``exp``.

    A token is accepted while ``now < exp``; there is no revocation list and no
    clock-skew leeway. ``clock`` returns epoch seconds and exists so expiry can
    be exercised without sleeping.
    """

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        key = secret.encode("utf-8")
        if len(key) < MIN_SECRET_BYTES:
            raise ValueError(f"token secret must be at least {MIN_SECRET_BYTES} bytes")
        if ttl_seconds <= 0:
            raise ValueError("token ttl must be positive")
        self._key = key
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "TokenService":
        return cls(settings.token_secret, ttl_seconds=settings.token_ttl_seconds, **kwargs)

    def issue(self, user_id: str) -> str:
        if not user_id:
            raise ValueError("user_id is required")
        payload = {"sub": str(user_id), "exp": int(self._clock()) + self.ttl_seconds}
        return self._encode_jwt(payload)

    def verify(self, token: str) -> str:
        """Return the user id carried by ``token`` or raise InvalidTokenError."""
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError()
        return payload["sub"]

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header_enc = self._encode_segment(
            json.dumps(self._HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; a header naming any other alg is rejected outright
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected = self._sign(signing_input).encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool):
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if self._clock() >= exp_ts:
            return None
        return payload
