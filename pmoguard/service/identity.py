from __future__ import annotations

from typing import Mapping, Optional

from pmoguard.logging import get_logger
from pmoguard.service.errors import AuthenticationError, InvalidTokenError
from pmoguard.service.tokens import TokenService

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credentials = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credentials = credentials.strip()
    return credentials or None


class IdentityExtractor:
    """Resolve the caller's user id from the auth cookie or a Bearer header.

    The cookie is tried first and the header second; the first token that
    verifies wins. Browsers that block third-party cookies fall through to the
    header, which is why both are consulted on every request.
    """

    def __init__(self, tokens: TokenService, *, cookie_name: str = "token") -> None:
        self.tokens = tokens
        self.cookie_name = cookie_name

    def extract(
        self, cookies: Mapping[str, str], authorization: Optional[str]
    ) -> Optional[str]:
        """Return a user id, ``None`` when no token was sent, or raise InvalidTokenError."""
        candidates = [
            (source, token)
            for source, token in (
                ("cookie", cookies.get(self.cookie_name)),
                ("header", extract_bearer(authorization)),
            )
            if token
        ]
        if not candidates:
            return None
        for source, token in candidates:
            try:
                user_id = self.tokens.verify(token)
            except InvalidTokenError:
                logger.info("identity_token_rejected", source=source)
                continue
            return user_id
        raise InvalidTokenError()

    def require(self, cookies: Mapping[str, str], authorization: Optional[str]) -> str:
        user_id = self.extract(cookies, authorization)
        if user_id is None:
            raise AuthenticationError("authentication required")
        return user_id

    def optional(
        self, cookies: Mapping[str, str], authorization: Optional[str]
    ) -> Optional[str]:
        try:
            return self.extract(cookies, authorization)
        except InvalidTokenError:
            return None

    def refresh(self, user_id: str) -> Optional[str]:
        """Issue a fresh token for the response body; never fails the request."""
        try:
            return self.tokens.issue(user_id)
        except Exception as exc:
            logger.warning("token_refresh_failed", user_id=user_id, error=str(exc))
            return None
