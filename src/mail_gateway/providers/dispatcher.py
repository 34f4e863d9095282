# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Routes normalized messages to the configured email backends.

The dispatcher knows the closed set of providers (:class:`Provider`). A
provider whose credentials are missing is still known: asking for it raises
:class:`ConfigurationError` with the reason, before anything is sent. Names
outside the set raise :class:`ValidationError`.

Example:
    Building the dispatcher from settings::

        dispatcher = build_dispatcher(load_settings(), metrics)
        result = await dispatcher.send("sendgrid", message)
"""

from __future__ import annotations

from collections.abc import Mapping

from ..config import GatewaySettings
from ..errors import ConfigurationError, ValidationError
from ..logger import get_logger
from ..models import BatchResult, DispatchResult, NormalizedMessage, Provider
from ..prometheus import GatewayMetrics
from ..tokens import (
    DelegatedTokenCredential,
    DelegatedTokenExchanger,
    ServiceAccountCredential,
    ServiceAccountExchanger,
    TokenManager,
)
from .base import MISSING_FIELDS_MESSAGE, EmailProvider
from .gmail import GmailProvider
from .sendgrid import SendGridProvider

logger = get_logger("ProviderDispatcher")


class ProviderDispatcher:
    """Closed registry of email backends.

    Attributes:
        providers: Ready backends by Provider.
        unconfigured: Reason each missing backend is unavailable.
    """

    def __init__(
        self,
        providers: Mapping[Provider, EmailProvider] | None = None,
        *,
        unconfigured: Mapping[Provider, str] | None = None,
    ):
        self.providers: dict[Provider, EmailProvider] = dict(providers or {})
        self.unconfigured: dict[Provider, str] = dict(unconfigured or {})

    def resolve(self, name: str | Provider) -> EmailProvider:
        """Return the backend serving ``name``.

        Raises:
            ValidationError: ``name`` is not a known provider.
            ConfigurationError: The provider is known but not configured.
        """
        try:
            provider = Provider(name)
        except ValueError:
            raise ValidationError(f"Invalid provider: {name}. Must be 'gmail' or 'sendgrid'") from None
        backend = self.providers.get(provider)
        if backend is None:
            reason = self.unconfigured.get(provider, f"{provider.value} service not configured")
            logger.error(reason)
            raise ConfigurationError(reason)
        return backend

    def configured(self) -> dict[str, bool]:
        return {provider.value: provider in self.providers for provider in Provider}

    async def send(self, provider: str | Provider, message: NormalizedMessage) -> DispatchResult:
        """Send one message.

        Raises:
            ValidationError: Unknown provider or message without to/subject.
            ConfigurationError: Provider not configured.
        """
        backend = self.resolve(provider)
        if not message.is_addressable():
            raise ValidationError(MISSING_FIELDS_MESSAGE)
        try:
            return await backend.send(message)
        finally:
            await backend.release()

    async def send_batch(self, provider: str | Provider, messages: list[NormalizedMessage]) -> BatchResult:
        """Send messages one after the other, in submission order.

        A failed message does not stop the batch; it is reported in place,
        including messages the backend refuses as invalid (e.g. no mailbox).
        """
        backend = self.resolve(provider)
        results = []
        try:
            for message in messages:
                try:
                    result = await backend.send(message)
                except ValidationError as exc:
                    result = backend.failed_result(exc.message)
                results.append(result)
        finally:
            await backend.release()
        batch = BatchResult.from_results(results)
        logger.info(
            "Batch via %s: %d sent, %d failed", backend.name.value, batch.successful, batch.failed
        )
        return batch

    async def cleanup(self) -> None:
        for backend in self.providers.values():
            await backend.cleanup()

    async def close(self) -> None:
        for backend in self.providers.values():
            await backend.close()


def build_gmail_tokens(settings: GatewaySettings, metrics: GatewayMetrics | None = None) -> TokenManager:
    """TokenManager for the Gmail credential selected by ``gmail_auth_method``."""
    if settings.gmail_uses_auth0:
        exchanger = DelegatedTokenExchanger(
            DelegatedTokenCredential(
                domain=settings.auth0_domain or "",
                client_id=settings.auth0_client_id or "",
                client_secret=settings.auth0_client_secret or "",
                audience=settings.gmail_auth0_audience,
                user_email=settings.gmail_user_email,
                user_id=settings.gmail_auth0_user_id,
            )
        )
    else:
        exchanger = ServiceAccountExchanger(
            ServiceAccountCredential(
                client_email=settings.gmail_client_email or "",
                private_key=settings.gmail_private_key or "",
                user_email=settings.gmail_user_email,
            )
        )
    return TokenManager(exchanger, name=Provider.GMAIL.value, metrics=metrics)


def build_dispatcher(settings: GatewaySettings, metrics: GatewayMetrics | None = None) -> ProviderDispatcher:
    """Instantiate every provider whose credentials are present in ``settings``."""
    providers: dict[Provider, EmailProvider] = {}
    unconfigured: dict[Provider, str] = {}

    gmail_error = settings.gmail_configuration_error
    if gmail_error:
        unconfigured[Provider.GMAIL] = gmail_error
    else:
        if settings.gmail_uses_auth0:
            mailbox = settings.gmail_user_email
        else:
            mailbox = settings.gmail_user_email or settings.gmail_client_email
        providers[Provider.GMAIL] = GmailProvider(
            build_gmail_tokens(settings, metrics),
            mailbox=mailbox,
            mailbox_from_message=settings.gmail_uses_auth0,
            metrics=metrics,
        )

    sendgrid_error = settings.sendgrid_configuration_error
    if sendgrid_error:
        unconfigured[Provider.SENDGRID] = sendgrid_error
    else:
        providers[Provider.SENDGRID] = SendGridProvider(
            settings.sendgrid_api_key or "",
            default_from=settings.sendgrid_default_from,
            metrics=metrics,
        )

    for provider, reason in unconfigured.items():
        logger.info("Provider %s disabled: %s", provider.value, reason)
    return ProviderDispatcher(providers, unconfigured=unconfigured)
