# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Gateway settings loaded from an INI file with environment fallbacks.

Environment variables:
  MGW_CONFIG - Path to config.ini file (default: config.ini)
  MGW_LOG_LEVEL - Logging level (default: INFO)
  MGW_DB_PATH - Database path (default: .data/mailgateway.db)
  MGW_HOST - Server host (default: 0.0.0.0)
  MGW_PORT - Server port (default: 8000)
  API_SECRET - Shared bearer secret required by every protected route
  RATE_LIMIT_ENABLED - Anything but "false" keeps rate limiting on
  GMAIL_AUTH_METHOD - "service-account" (default) or "auth0"
  GMAIL_CLIENT_EMAIL, GMAIL_PRIVATE_KEY - Google service account
  GMAIL_USER_EMAIL - Mailbox to send as
  GMAIL_AUTH0_USER_ID, GMAIL_AUTH0_AUDIENCE - Auth0 delegated tokens
  AUTH0_DOMAIN, AUTH0_CLIENT_ID, AUTH0_CLIENT_SECRET - Auth0 application
  SENDGRID_API_KEY, SENDGRID_DEFAULT_FROM - SendGrid

Config file sections/keys:
  [server] host, port, api_secret
  [storage] db_path
  [rate_limit] enabled
  [gmail] auth_method, client_email, private_key, user_email, auth0_user_id, auth0_audience
  [auth0] domain, client_id, client_secret
  [sendgrid] api_key, default_from
  [logging] level
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .tokens import GMAIL_SEND_SCOPE

AUTH_SERVICE_ACCOUNT = "service-account"
AUTH_AUTH0 = "auth0"


def unescape_private_key(value: str | None) -> str | None:
    """Turn literal ``\\n`` sequences (common in env files) into newlines."""
    if not value:
        return None
    return value.replace("\\n", "\n")


@dataclass
class GatewaySettings:
    host: str = "0.0.0.0"
    port: int = 8000
    api_secret: str | None = None
    db_path: str = ".data/mailgateway.db"
    rate_limit_enabled: bool = True
    log_level: str = "INFO"

    gmail_auth_method: str = AUTH_SERVICE_ACCOUNT
    gmail_client_email: str | None = None
    gmail_private_key: str | None = None
    gmail_user_email: str | None = None
    gmail_auth0_user_id: str | None = None
    gmail_auth0_audience: str = GMAIL_SEND_SCOPE

    auth0_domain: str | None = None
    auth0_client_id: str | None = None
    auth0_client_secret: str | None = None

    sendgrid_api_key: str | None = None
    sendgrid_default_from: str = "noreply@example.com"

    @property
    def gmail_uses_auth0(self) -> bool:
        return self.gmail_auth_method == AUTH_AUTH0

    @property
    def gmail_configuration_error(self) -> str | None:
        """Why Gmail cannot be used, or None when it is fully configured."""
        if self.gmail_uses_auth0:
            if not (self.auth0_domain and self.auth0_client_id and self.auth0_client_secret):
                return "Auth0 configuration incomplete. Check AUTH0_DOMAIN, AUTH0_CLIENT_ID, AUTH0_CLIENT_SECRET"
            return None
        if not (self.gmail_client_email and self.gmail_private_key):
            return "Gmail service not configured. Set GMAIL_CLIENT_EMAIL and GMAIL_PRIVATE_KEY"
        return None

    @property
    def sendgrid_configuration_error(self) -> str | None:
        if not self.sendgrid_api_key:
            return "SendGrid service not configured"
        return None


def load_settings(
    config_path: str | os.PathLike | None = None,
    environ: Mapping[str, str] | None = None,
) -> GatewaySettings:
    """Load configuration from an INI file with environment variables as fallbacks.

    Args:
        config_path: INI file to read; defaults to ``MGW_CONFIG`` or
            ``config.ini``. A missing file is not an error.
        environ: Environment mapping, ``os.environ`` when omitted.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("MGW_CONFIG", "config.ini"))
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_str(section: str, option: str, fallback: str | None = None) -> str | None:
        value = get(section, option, fallback)
        if isinstance(value, str):
            value = value.strip() or None
        return value

    defaults = GatewaySettings()
    settings = GatewaySettings(
        host=get_str("server", "host", env.get("MGW_HOST")) or defaults.host,
        port=get_int("server", "port", env.get("MGW_PORT"), default=defaults.port),
        api_secret=get_str("server", "api_secret", env.get("API_SECRET")),
        db_path=os.path.expanduser(
            get_str("storage", "db_path", env.get("MGW_DB_PATH")) or defaults.db_path
        ),
        rate_limit_enabled=get_bool("rate_limit", "enabled", env.get("RATE_LIMIT_ENABLED"), default=True),
        log_level=(get_str("logging", "level", env.get("MGW_LOG_LEVEL")) or defaults.log_level).upper(),
        gmail_auth_method=(
            get_str("gmail", "auth_method", env.get("GMAIL_AUTH_METHOD")) or defaults.gmail_auth_method
        ).lower(),
        gmail_client_email=get_str("gmail", "client_email", env.get("GMAIL_CLIENT_EMAIL")),
        gmail_private_key=unescape_private_key(get_str("gmail", "private_key", env.get("GMAIL_PRIVATE_KEY"))),
        gmail_user_email=get_str("gmail", "user_email", env.get("GMAIL_USER_EMAIL")),
        gmail_auth0_user_id=get_str("gmail", "auth0_user_id", env.get("GMAIL_AUTH0_USER_ID")),
        gmail_auth0_audience=(
            get_str("gmail", "auth0_audience", env.get("GMAIL_AUTH0_AUDIENCE")) or defaults.gmail_auth0_audience
        ),
        auth0_domain=get_str("auth0", "domain", env.get("AUTH0_DOMAIN")),
        auth0_client_id=get_str("auth0", "client_id", env.get("AUTH0_CLIENT_ID")),
        auth0_client_secret=get_str("auth0", "client_secret", env.get("AUTH0_CLIENT_SECRET")),
        sendgrid_api_key=get_str("sendgrid", "api_key", env.get("SENDGRID_API_KEY")),
        sendgrid_default_from=(
            get_str("sendgrid", "default_from", env.get("SENDGRID_DEFAULT_FROM")) or defaults.sendgrid_default_from
        ),
    )
    return settings
