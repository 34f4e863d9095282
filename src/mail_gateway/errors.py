# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception taxonomy for the mail gateway.

Every error that can reach the HTTP layer derives from :class:`GatewayError`
and carries the status code and public message used to render the response
body. Provider-side failures (:class:`ProviderSendError`,
:class:`TokenRefreshError`) never reach the HTTP layer directly: the
dispatcher turns them into a failed ``DispatchResult``.
"""

from __future__ import annotations

import math
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .rate_limit import RateDecision


class GatewayError(Exception):
    """Base class for errors rendered as structured HTTP responses.

    Attributes:
        status_code: HTTP status code returned to the caller.
        status_message: HTTP reason phrase.
        message: Human-readable description.
        data: Extra JSON-serializable fields merged into the response body.
    """

    status_code = 500
    status_message = "Internal Server Error"

    def __init__(self, message: str, *, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.data = dict(data or {})

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON body for this error."""
        return {
            "statusCode": self.status_code,
            "statusMessage": self.status_message,
            "message": self.message,
            "data": {"message": self.message, **self.data},
        }


class ValidationError(GatewayError):
    """Bad or missing input in the request body or query."""

    status_code = 400
    status_message = "Bad Request"


class AuthError(GatewayError):
    """The request did not carry a valid bearer credential."""

    status_code = 401
    status_message = "Unauthorized"


class MissingCredential(AuthError):
    def __init__(self, message: str = "Missing Authorization header"):
        super().__init__(message)


class InvalidCredential(AuthError):
    def __init__(self, message: str = "Invalid API key"):
        super().__init__(message)


class RateLimitExceeded(GatewayError):
    """The client used up its quota for the current window.

    Attributes:
        decision: The rejecting :class:`~mail_gateway.rate_limit.RateDecision`.
        retry_after: Whole seconds until the window resets (at least 1).
    """

    status_code = 429
    status_message = "Too Many Requests"

    def __init__(self, decision: RateDecision, *, now: float | None = None):
        now = time.time() if now is None else now
        self.decision = decision
        self.retry_after = max(1, math.ceil(decision.reset_at - now))
        super().__init__(
            "Rate limit exceeded",
            data={"retryAfter": self.retry_after, "remaining": decision.remaining},
        )


class ConfigurationError(GatewayError):
    """A provider was requested but its credentials are not configured."""

    status_code = 500
    status_message = "Internal Server Error"


class ProviderSendError(Exception):
    """The provider backend rejected the message or could not be reached."""


class TokenRefreshError(ProviderSendError):
    """The identity provider refused or failed a token exchange."""
