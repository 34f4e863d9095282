# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""mail-gateway: a rate-limited HTTP gateway for sending email.

Requests are authenticated with a shared bearer secret, rate limited per
client and endpoint class, dispatched to Gmail (SMTP with OAuth2 tokens) or
SendGrid (HTTPS API), and recorded in an audit log.

The building blocks, leaves first:

- :mod:`mail_gateway.store`: persistent windows, API key ledger, request log
- :mod:`mail_gateway.rate_limit`: fixed-window RateGate
- :mod:`mail_gateway.auth`: bearer AuthGate
- :mod:`mail_gateway.tokens`: single-flight OAuth2 TokenManager
- :mod:`mail_gateway.providers`: Gmail and SendGrid backends and dispatcher
- :mod:`mail_gateway.request_log`: asynchronous RequestLogger
- :mod:`mail_gateway.gateway` and :mod:`mail_gateway.api`: composition and HTTP
"""

__version__ = "0.1.0"
