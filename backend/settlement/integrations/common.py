from __future__ import annotations

from dataclasses import dataclass


@dataclass
class IntegrationResult:
    """Outcome of a side-channel call (notification, catalog lookup).

    ``ok`` is False only when the integration could not act at all; callers
    log such results and carry on.
    """

    ok: bool
    code: str = ""
    message: str = ""
    raw: dict | None = None


class IntegrationMisconfiguredError(RuntimeError):
    def __init__(self, setting: str, value: str):
        super().__init__(f"INTEGRATION_MISCONFIGURED:{setting}={value}")
        self.setting = setting
        self.value = value


def provider_name(raw: str | None, default: str) -> str:
    return (raw or default).strip().lower() or default
