"""Token authentication for real-time sessions.

Session issuance lives outside this service; connections present a bearer
token and the Authenticator maps it to an owner id.
"""

import hmac
import logging
from typing import Protocol

from errors import AuthenticationFailure

logger = logging.getLogger(__name__)


class Authenticator(Protocol):
    def authenticate(self, token: str) -> str:
        """Return the owner id for `token` or raise AuthenticationFailure."""
        ...


class StaticTokenAuthenticator:
    """Authenticator backed by a fixed token -> owner table (AUTH_TOKENS)."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    def authenticate(self, token: str) -> str:
        if not token or not isinstance(token, str):
            raise AuthenticationFailure("Authentication token required")
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        for known, owner in self._tokens.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                return owner
        logger.info("Authentication rejected | token_prefix=%s", token[:4])
        raise AuthenticationFailure("Invalid authentication token")
