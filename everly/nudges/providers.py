"""Delivery providers. Every channel implements the same send() contract."""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Protocol

import requests

from everly.logging_config import get_logger
from everly.nudges.errors import UnknownProviderError

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutboundNudge:
    hub_id: str
    member_id: str
    channel: str
    message: str
    variables: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class SendResult:
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls):
        return cls(ok=True)

    @classmethod
    def failure(cls, error):
        return cls(ok=False, error=str(error))


class NudgeProvider(Protocol):
    """Interface for stub, chat DM, email, ... Same contract; only transport differs."""

    def send(self, nudge: OutboundNudge) -> SendResult:
        ...


class StubNudgeProvider:
    """Logs the nudge and reports success. Nothing leaves the process."""

    def send(self, nudge: OutboundNudge) -> SendResult:
        logger.info(
            "Stub nudge delivery",
            hub_id=nudge.hub_id,
            member_id=nudge.member_id,
            channel=nudge.channel,
            message=nudge.message[:200]
        )
        return SendResult.success()


class WebhookNudgeProvider:
    """POST the nudge as JSON to an HTTP endpoint (relay, Zapier, chat bot)."""

    def __init__(self, url, timeout=10, session=None):
        if not url:
            raise ValueError("NUDGE_WEBHOOK_URL must be set for the webhook provider")
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, nudge: OutboundNudge) -> SendResult:
        try:
            response = self.session.post(self.url, json=asdict(nudge), timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Webhook nudge delivery failed", url=self.url, error=str(e))
            return SendResult.failure(f"request failed: {e}")

        if not response.ok:
            logger.warning("Webhook nudge delivery rejected", url=self.url, status_code=response.status_code)
            return SendResult.failure(f"HTTP {response.status_code}")
        return SendResult.success()


def _stub_factory(config):
    return StubNudgeProvider()


def _webhook_factory(config):
    return WebhookNudgeProvider(
        config.get("NUDGE_WEBHOOK_URL"),
        timeout=config.get("NUDGE_PROVIDER_TIMEOUT_SECONDS", 10),
    )


PROVIDER_FACTORIES = {
    "stub": _stub_factory,
    "webhook": _webhook_factory,
}


def build_provider(config) -> NudgeProvider:
    """Construct the provider named by NUDGE_PROVIDER. Raises UnknownProviderError."""
    name = (config.get("NUDGE_PROVIDER") or "stub").lower()
    if name not in PROVIDER_FACTORIES:
        raise UnknownProviderError(f"Unknown nudge provider: {name}. Available: {list(PROVIDER_FACTORIES)}")
    provider = PROVIDER_FACTORIES[name](config)
    logger.info("Nudge provider configured", provider=name)
    return provider
