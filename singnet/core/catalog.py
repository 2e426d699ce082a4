"""
Config and server catalog derived from subscriptions
"""

import threading
import logging
from typing import Optional, Dict, List, Tuple

from .errors import UnresolvableError
from .subscriptions import SubscriptionManager
from .types import VpnConfig
from ..providers.singbox_config import SingBoxConfigBuilder

logger = logging.getLogger(__name__)


class ConfigCatalog:
    """Read-side projection of subscriptions into engine configs"""

    def __init__(self, subscriptions: SubscriptionManager,
                 builder: SingBoxConfigBuilder):
        self.subscriptions = subscriptions
        self.builder = builder
        self._cache: Dict[str, Tuple[Optional[float], VpnConfig]] = {}
        self._lock = threading.Lock()

        subscriptions.register_callback('changed', self.invalidate)
        subscriptions.register_callback('removed', self.invalidate)

    def invalidate(self, subscription_id: str):
        with self._lock:
            if self._cache.pop(subscription_id, None) is not None:
                logger.debug(f"Config cache invalidated: {subscription_id}")

    def servers_for(self, subscription_id: str) -> List[str]:
        """Server labels in source order (empty if never synchronized)"""
        return self.subscriptions.get(subscription_id).labels

    def config_for(self, subscription_id: str,
                   server: Optional[str] = None) -> VpnConfig:
        """
        Return the engine config targeting a server of the subscription

        Args:
            subscription_id: Subscription (and config) id
            server: Server label, first server when omitted

        Raises:
            NotFoundError: unknown subscription
            UnresolvableError: no servers yet, or label not in the list
        """
        subscription = self.subscriptions.get(subscription_id)
        if not subscription.servers:
            raise UnresolvableError(
                f"Subscription {subscription.name} has no servers yet"
            )

        if server:
            matches = [s for s in subscription.servers if s.label == server]
            if not matches:
                raise UnresolvableError(
                    f"Server {server!r} not found in {subscription.name}"
                )
            descriptor = matches[0]
        else:
            descriptor = subscription.servers[0]

        with self._lock:
            cached = self._cache.get(subscription_id)
            if cached is not None:
                synced_at, config = cached
                if (synced_at == subscription.updated_at
                        and config.server == descriptor.label):
                    return config

            config = VpnConfig(
                id=subscription.id,
                name=subscription.name,
                server=descriptor.label,
                config=self.builder.build(descriptor),
                server_count=len(subscription.servers),
            )
            self._cache[subscription_id] = (subscription.updated_at, config)
            logger.debug(
                f"Generated config for {subscription.name} -> {descriptor.label}"
            )
            return config

    def list_configs(self) -> List[VpnConfig]:
        """Summaries of every connectable config"""
        configs = []
        for subscription in self.subscriptions.list():
            if not subscription.servers:
                continue
            with self._lock:
                cached = self._cache.get(subscription.id)
            selected = cached[1].server if cached else None
            configs.append(VpnConfig(
                id=subscription.id,
                name=subscription.name,
                server=selected or subscription.servers[0].label,
                server_count=len(subscription.servers),
            ))
        return configs
