"""
Notification dispatcher - routes notifications to providers by channel.
"""

import logging
from typing import Dict, List, Optional

from ..core.config import NotificationConfig
from .models import Notification
from .providers import NotificationProvider, build_providers

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Dispatches notifications to the providers behind each channel.

    A channel (``team``, ``oncall``, ``manager`` ...) maps to one or more
    provider names. Each enabled provider is called at most once per
    notification even when several channels share it.
    """

    def __init__(
        self,
        providers: List[NotificationProvider],
        routes: Optional[Dict[str, List[str]]] = None,
    ):
        """
        Initialize notification dispatcher.

        Args:
            providers: Available providers
            routes: Channel name -> provider names. Channels without a route
                go to every enabled provider.
        """
        self.providers: Dict[str, NotificationProvider] = {p.name: p for p in providers}
        self.routes = routes or {}

        enabled = [name for name, p in self.providers.items() if p.is_enabled()]
        logger.info(f"NotificationDispatcher initialized with providers: {enabled}")

    @classmethod
    def from_config(cls, config: NotificationConfig) -> "NotificationDispatcher":
        return cls(build_providers(config), routes=config.routes)

    def providers_for(self, channels: List[str]) -> List[NotificationProvider]:
        """Resolve channels to the distinct enabled providers serving them."""
        names: List[str] = []
        for channel in channels:
            route = self.routes.get(channel)
            if route is None:
                logger.debug(f"No route for channel '{channel}', using all providers")
                route = list(self.providers)
            for name in route:
                if name not in names:
                    names.append(name)

        resolved = []
        for name in names:
            provider = self.providers.get(name)
            if provider is None:
                logger.warning(f"Unknown notification provider '{name}' in routes")
                continue
            if provider.is_enabled():
                resolved.append(provider)
        return resolved

    def dispatch(self, notification: Notification) -> bool:
        """
        Send notification via the providers behind its channels.

        Args:
            notification: Notification to send

        Returns:
            True if at least one provider succeeded, False otherwise
        """
        providers = self.providers_for(notification.channels)
        if not providers:
            logger.warning(
                f"No enabled notification providers for channels {notification.channels}"
            )
            return False

        success_count = 0
        for provider in providers:
            try:
                if provider.send(notification):
                    success_count += 1
            except Exception as e:
                logger.error(f"Provider {provider.name} failed: {e}", exc_info=True)

        logger.info(
            f"Notification sent via {success_count}/{len(providers)} providers: "
            f"{notification.subject}"
        )
        return success_count > 0

    def get_enabled_providers(self) -> List[str]:
        return [name for name, p in self.providers.items() if p.is_enabled()]
