# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bearer-token authentication against a single shared secret."""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from .errors import InvalidCredential, MissingCredential

# Routes served without credentials or rate limiting.
PUBLIC_PATHS = frozenset({"/health"})


def bearer_value(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Returns None when the header is missing or does not use the Bearer
    scheme.
    """
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def fingerprint(token: str) -> str:
    """Stable, non-reversible identifier for a credential."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ClientIdentity:
    """The authenticated caller.

    Attributes:
        key_fingerprint: SHA-256 of the presented token, used by the usage
            ledger instead of the secret itself.
    """

    key_fingerprint: str


class AuthGate:
    """Validates bearer credentials with a constant-time comparison."""

    def __init__(self, api_secret: str):
        if not api_secret:
            raise ValueError("api_secret must not be empty")
        self._secret = api_secret.encode("utf-8")

    def validate(self, authorization: str | None) -> ClientIdentity:
        """Check the ``Authorization`` header of a request.

        Raises:
            MissingCredential: No header, or no bearer token in it.
            InvalidCredential: The token does not match the shared secret.
        """
        if not authorization:
            raise MissingCredential()
        token = bearer_value(authorization)
        if token is None:
            raise MissingCredential("Missing bearer token")
        if not secrets.compare_digest(token.encode("utf-8"), self._secret):
            raise InvalidCredential()
        return ClientIdentity(key_fingerprint=fingerprint(token))
