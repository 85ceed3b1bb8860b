"""
Bearer credential authentication.
This module validates the Authorization header of inbound requests against the configured secrets.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from clg_mcp.error_handling.exceptions import AuthError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "

# Stable, machine-readable rejection reasons
MISSING_CREDENTIAL = "missing credential"
MALFORMED_CREDENTIAL = "malformed credential"
INVALID_CREDENTIAL = "invalid credential"

_MESSAGES = {
    MISSING_CREDENTIAL: "Missing Authorization header",
    MALFORMED_CREDENTIAL: "Invalid Authorization header format. Expected: Bearer <token>",
    INVALID_CREDENTIAL: "Invalid authentication token",
}


@dataclass(frozen=True)
class AuthResult:
    """Outcome of one authentication check."""
    is_authenticated: bool
    reason: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return _MESSAGES.get(self.reason) if self.reason else None

    def raise_for_denied(self) -> None:
        """Raise AuthError if this result is a denial."""
        if not self.is_authenticated:
            raise AuthError(self.reason, self.message)


AUTHORIZED = AuthResult(True)


def _denied(reason: str) -> AuthResult:
    return AuthResult(False, reason)


def extract_bearer_token(credential_header: Optional[str]) -> Union[str, AuthResult]:
    """Return the token of a "Bearer <token>" header, or the denial describing why there is none."""
    if credential_header is None:
        return _denied(MISSING_CREDENTIAL)
    if not credential_header.startswith(BEARER_PREFIX):
        return _denied(MALFORMED_CREDENTIAL)
    token = credential_header[len(BEARER_PREFIX):]
    if not token:
        return _denied(MALFORMED_CREDENTIAL)
    return token


def _matches(token: str, secrets: Iterable[str]) -> bool:
    # No early exit: every member is compared
    matched = False
    for secret in secrets:
        if hmac.compare_digest(token.encode('utf-8'), secret.encode('utf-8')):
            matched = True
    return matched


def authenticate(credential_header: Optional[str], configured_secrets: Iterable[str]) -> AuthResult:
    """
    Validate a bearer credential against a set of secrets.

    An empty secret set means public mode: every request is authorized.
    Otherwise the header must be exactly "Bearer <token>" with <token> a member of the set.
    Pure function: no logging, no state.
    """
    secrets = tuple(configured_secrets)
    if not secrets:
        return AUTHORIZED

    token = extract_bearer_token(credential_header)
    if isinstance(token, AuthResult):
        return token
    if _matches(token, secrets):
        return AUTHORIZED
    return _denied(INVALID_CREDENTIAL)


class BearerAuthenticator:
    """
    Holds the configured credential set: one primary secret plus a multi-secret list.

    The primary secret is checked first; the multi-secret list is only consulted
    when that check fails and the list is non-empty.
    """

    def __init__(self, token: Optional[str] = None, tokens: Optional[Iterable[str]] = None):
        self.token = token or None
        self.tokens: Tuple[str, ...] = tuple(t for t in (tokens or ()) if t)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "BearerAuthenticator":
        auth_config = config.get('auth', {})
        tokens = auth_config.get('tokens') or []
        if isinstance(tokens, str):
            tokens = [token.strip() for token in tokens.split(',')]
        authenticator = cls(auth_config.get('token'), tokens)
        if authenticator.is_public:
            logger.warning("No authentication secrets configured, server runs in public mode")
        else:
            logger.info(f"Bearer authentication enabled with {len(authenticator.credential_set)} secret(s)")
        return authenticator

    @property
    def credential_set(self) -> Tuple[str, ...]:
        primary = (self.token,) if self.token else ()
        return primary + tuple(t for t in self.tokens if t != self.token)

    @property
    def is_public(self) -> bool:
        return not self.credential_set

    def authenticate(self, credential_header: Optional[str]) -> AuthResult:
        if self.is_public:
            return AUTHORIZED

        primary = authenticate(credential_header, (self.token,)) if self.token else None
        if primary is not None and (primary.is_authenticated or not self.tokens):
            return primary
        return authenticate(credential_header, self.tokens)
