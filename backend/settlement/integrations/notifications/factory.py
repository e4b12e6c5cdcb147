from __future__ import annotations

from settlement.integrations.common import IntegrationMisconfiguredError, provider_name
from settlement.integrations.notifications.base import NotificationProvider
from settlement.integrations.notifications.disabled_provider import DisabledNotificationProvider
from settlement.integrations.notifications.outbox_provider import OutboxNotificationProvider

PROVIDERS = {
    "outbox": OutboxNotificationProvider,
    "disabled": DisabledNotificationProvider,
}


def build_notification_provider(settings) -> NotificationProvider:
    provider = provider_name(getattr(settings, "notifications_provider", None), "outbox")
    factory = PROVIDERS.get(provider)
    if factory is None:
        raise IntegrationMisconfiguredError("notifications_provider", provider)
    return factory()


def notifications_health(settings) -> dict:
    provider = provider_name(getattr(settings, "notifications_provider", None), "outbox")
    if provider == "disabled":
        status = "disabled"
    elif provider in PROVIDERS:
        status = "configured"
    else:
        status = "misconfigured"
    return {"status": status, "provider": provider}
