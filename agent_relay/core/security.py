"""Bearer-token authentication for HTTP and WebSocket requests."""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from agent_relay.core.errors import Unauthorized

DEFAULT_PRINCIPAL = "client"


@dataclass(frozen=True)
class Principal:
    """Identity established at handshake; fixed for the connection's lifetime."""

    name: str


def parse_auth_tokens(raw: str) -> dict[str, str]:
    """Parse ``principal:token`` pairs separated by commas into a token → principal map.

    Entries without a principal part map to ``DEFAULT_PRINCIPAL``.
    """
    tokens: dict[str, str] = {}
    for entry in raw.split(","):
        item = entry.strip()
        if not item:
            continue
        principal, sep, token = item.partition(":")
        if not sep:
            principal, token = DEFAULT_PRINCIPAL, item
        principal = principal.strip() or DEFAULT_PRINCIPAL
        token = token.strip()
        if token:
            tokens[token] = principal
    return tokens


class BearerAuthenticator:
    """Validate ``Authorization: Bearer <token>`` metadata against configured tokens."""

    def __init__(self, tokens: dict[str, str]) -> None:
        self._tokens = dict(tokens)

    @property
    def configured(self) -> bool:
        return bool(self._tokens)

    def authenticate(self, authorization: str | None) -> Principal:
        if not authorization:
            raise Unauthorized("missing bearer credential")
        scheme, _, credential = authorization.strip().partition(" ")
        credential = credential.strip()
        if scheme.lower() != "bearer" or not credential:
            raise Unauthorized("authorization header must use the Bearer scheme")
        matched: str | None = None
        # constant-time compare against every configured token, no early exit
        for token, principal in self._tokens.items():
            if hmac.compare_digest(token.encode("utf-8"), credential.encode("utf-8")):
                matched = principal
        if matched is None:
            raise Unauthorized("invalid bearer credential")
        return Principal(name=matched)
