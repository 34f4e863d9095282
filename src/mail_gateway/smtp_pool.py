# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lightweight asyncio-friendly SMTP connection pool with XOAUTH2 login.

Connections are keyed by asyncio task ID, so a batch sent sequentially by one
request reuses a single authenticated session while concurrent requests keep
their own. A pooled connection is reused only when it was opened with the
same host, port, user and access token; a refreshed token therefore opens a
new session on the next send.

The pool handles:
- TTL-based connection expiration
- Health checking via SMTP NOOP commands
- Reconnection when a connection is stale, broken or carries an old token
- Cleanup of expired connections

Example:
    Sending through Gmail with an OAuth2 token::

        pool = SMTPPool(ttl=300)
        smtp = await pool.get_connection(
            "smtp.gmail.com", 465, "sender@example.com", token.access_token, use_tls=True
        )
        await smtp.send_message(message)
"""

import asyncio
import base64
import time

import aiosmtplib

CONNECT_TIMEOUT = 15.0


def xoauth2_string(user: str, access_token: str) -> bytes:
    """Base64 SASL XOAUTH2 initial response for ``user``."""
    raw = f"user={user}\x01auth=Bearer {access_token}\x01\x01"
    return base64.b64encode(raw.encode("utf-8"))


class SMTPPool:
    """Asyncio-compatible SMTP connection pool with per-task connection reuse.

    Attributes:
        ttl: Maximum age in seconds for pooled connections before expiration.
        pool: Internal dictionary mapping task IDs to connection entries.
        lock: Asyncio lock guarding the pool dictionary.
    """

    def __init__(self, ttl: int = 300):
        """Initialize the SMTP connection pool.

        Args:
            ttl: Time-to-live in seconds for pooled connections. Defaults to
                300 seconds (5 minutes).
        """
        self.ttl = ttl
        self.pool: dict[int, tuple[aiosmtplib.SMTP, float, tuple[str, int, str, str, bool]]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: str, access_token: str, use_tls: bool) -> aiosmtplib.SMTP:
        """Open a connection and authenticate it with XOAUTH2.

        Port 465 with use_tls uses implicit TLS, other ports with use_tls
        upgrade with STARTTLS.

        Raises:
            asyncio.TimeoutError: If connecting takes longer than 15 seconds.
            aiosmtplib.SMTPAuthenticationError: If the server rejects the token.
            aiosmtplib.SMTPException: On any other SMTP failure.
        """
        if use_tls and port == 465:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=True, timeout=10.0)
        elif use_tls:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=True, use_tls=False, timeout=10.0)
        else:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=False, timeout=10.0)

        async def _do_connect():
            await smtp.connect()
            if smtp.is_ehlo_or_helo_needed:
                await smtp.ehlo()
            response = await smtp.execute_command(b"AUTH", b"XOAUTH2", xoauth2_string(user, access_token))
            if response.code != 235:
                raise aiosmtplib.SMTPAuthenticationError(response.code, response.message)
        await asyncio.wait_for(_do_connect(), timeout=CONNECT_TIMEOUT)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Send NOOP and report whether the server answered 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    async def get_connection(self, host: str, port: int, user: str, access_token: str, *, use_tls: bool) -> aiosmtplib.SMTP:
        """Retrieve or create an authenticated SMTP connection for the current task.

        Args:
            host: SMTP server hostname.
            port: SMTP server port.
            user: Mailbox the token belongs to.
            access_token: OAuth2 access token for XOAUTH2.
            use_tls: Whether to use TLS (keyword-only).

        Returns:
            A connected and authenticated aiosmtplib.SMTP instance.
        """
        task_id = id(asyncio.current_task())
        params = (host, port, user, access_token, use_tls)

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used, pooled_params = entry
            fresh_enough = (time.time() - last_used) < self.ttl
            if pooled_params == params and fresh_enough and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), params)
                return smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._quit(smtp)

        smtp = await self._connect(host, port, user, access_token, use_tls)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), params)
        return smtp

    async def discard(self) -> None:
        """Close and forget the current task's connection, e.g. after a send error."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self) -> None:
        """Remove and close expired or unhealthy connections from the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired: list[int] = []
        for task_id, (smtp, last_used, _params) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(task_id)

        for task_id in expired:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._quit(entry[0])

    async def close(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _last_used, _params in entries:
            await self._quit(smtp)

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        # Best effort: the connection is being dropped anyway
        try:
            await smtp.quit()
        except Exception:
            pass
