"""
Provider selection.

The active provider is resolved ONCE at process start from configuration and
wrapped in an immutable ProviderSelector that is injected into every
component that needs a provider. There is no runtime switch: changing
LIGHTNING_PROVIDER is a redeploy. This rules out invoices being minted
under one provider and checked under another because a global changed in
between.

Fallback:
  A secondary provider is built only when ENABLE_LIGHTNING_FALLBACK is set
  and the other provider is configured. Funds received through the fallback
  land in a different wallet than the customer's jar is backed by, so the
  flag is off by default and every use is logged as a warning.
"""

import logging
from dataclasses import dataclass

import httpx

from app.config import Settings
from app.providers.base import LightningProvider, ProviderKind
from app.providers.lnbits import LnbitsProvider
from app.providers.opennode import OpenNodeProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSelector:
    primary: LightningProvider
    fallback: LightningProvider | None = None

    def client_for(self, kind: ProviderKind) -> LightningProvider | None:
        """Return the configured client for a stored invoice's provider, if any."""
        for provider in (self.primary, self.fallback):
            if provider is not None and provider.kind == kind:
                return provider
        return None

    def describe(self) -> dict:
        return {
            "provider": self.primary.name,
            "fallback": self.fallback.name if self.fallback else None,
            "fallback_enabled": self.fallback is not None,
        }

    async def aclose(self) -> None:
        await self.primary.aclose()
        if self.fallback is not None:
            await self.fallback.aclose()


def _is_configured(kind: ProviderKind, config: Settings) -> bool:
    if kind == ProviderKind.OPENNODE:
        return bool(config.OPENNODE_API_KEY)
    return bool(config.LNBITS_BASE_URL)


def build_provider(
    kind: ProviderKind,
    config: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LightningProvider:
    if kind == ProviderKind.OPENNODE:
        return OpenNodeProvider(
            base_url=config.OPENNODE_BASE_URL,
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
            api_key=config.OPENNODE_API_KEY,
            callback_url=config.OPENNODE_CALLBACK_URL,
            transport=transport,
        )
    return LnbitsProvider(
        base_url=config.LNBITS_BASE_URL,
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
        webhook_url=config.LNBITS_WEBHOOK_URL,
        platform_admin_key=config.LNBITS_ADMIN_KEY,
        transport=transport,
    )


def build_selector(
    config: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderSelector:
    primary = build_provider(config.LIGHTNING_PROVIDER, config, transport)

    fallback = None
    secondary_kind = (
        ProviderKind.OPENNODE if primary.kind == ProviderKind.LNBITS else ProviderKind.LNBITS
    )
    if config.ENABLE_LIGHTNING_FALLBACK:
        if _is_configured(secondary_kind, config):
            fallback = build_provider(secondary_kind, config, transport)
            logger.warning(
                "Lightning fallback enabled: invoices may be issued by a different wallet",
                extra={"provider": primary.name, "fallback": fallback.name},
            )
        else:
            logger.warning(
                "Lightning fallback requested but secondary provider is not configured",
                extra={"provider": primary.name, "fallback": secondary_kind.value},
            )

    logger.info("Lightning provider selected", extra={"provider": primary.name})
    return ProviderSelector(primary=primary, fallback=fallback)
