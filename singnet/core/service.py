"""
Service facade: wires the components and exposes caller-facing operations
"""

import threading
from dataclasses import asdict
from typing import Optional, Dict, List, Any, Callable

import requests

from .. import __version__
from .catalog import ConfigCatalog
from .config_manager import ConfigManager
from .errors import ValidationError
from .settings_store import SettingsStore
from .status import StatusMonitor, Telemetry, load_lifetime
from .subscriptions import SubscriptionManager
from .vpn_controller import VPNController, ClientFactory
from ..providers.clash_api import ClashAPI
from ..providers.engine_installer import EngineInstaller
from ..providers.singbox_client import SingBoxClient
from ..providers.singbox_config import SingBoxConfigBuilder, clash_api_url
from ..utils.logging_setup import get_logger
from ..utils.network_tools import NetworkTools

logger = get_logger(__name__)


class VPNService:
    """All operations a local or remote caller can invoke"""

    def __init__(self, config: ConfigManager,
                 session: Optional[requests.Session] = None,
                 client_factory: Optional[ClientFactory] = None,
                 telemetry: Optional[Telemetry] = None,
                 network_tools: Optional[NetworkTools] = None):
        self.config = config
        self.session = session or requests.Session()
        self.channel = None

        self.settings = SettingsStore(config.settings_file)
        self.subscriptions = SubscriptionManager(
            config.subscriptions_file,
            session=self.session,
            fetch_timeout=float(config.get('subscriptions.fetch_timeout', 20)),
            user_agent=config.get('subscriptions.user_agent', 'singnet/1.0'),
            max_workers=int(config.get('subscriptions.refresh_workers', 4)),
        )

        clash_address = config.get('engine.clash_api', '')
        clash_secret = config.get('engine.clash_secret', '') or ''
        builder = SingBoxConfigBuilder(
            inbound=config.get('engine.inbound', 'mixed'),
            mixed_port=int(config.get('engine.mixed_port', 2080)),
            clash_api=clash_address,
            clash_secret=clash_secret,
            log_level=config.get('engine.log_level', 'info'),
        )
        self.catalog = ConfigCatalog(self.subscriptions, builder)

        self.installer = EngineInstaller(
            config.bin_dir,
            path_override=lambda: self.settings.get().singbox_path,
            version=config.get('engine.version', ''),
            download_url=config.get('engine.download_url', ''),
            session=self.session,
            timeout=float(config.get('engine.download_timeout', 120)),
        )

        if client_factory is None:
            client_factory = self._default_client_factory

        self.controller = VPNController(
            self.catalog,
            self.settings,
            self.installer,
            client_factory,
            start_timeout=float(config.get('engine.start_timeout', 15)),
            stop_grace=float(config.get('engine.stop_grace', 5)),
            lifetime=load_lifetime(config.traffic_file),
        )

        if telemetry is None:
            telemetry = ClashAPI(
                clash_api_url(clash_address) or 'http://127.0.0.1:9090',
                secret=clash_secret,
                timeout=float(config.get('status.telemetry_timeout', 2)),
            ).traffic_totals

        self.monitor = StatusMonitor(
            self.controller,
            telemetry,
            config.traffic_file,
            interval=float(config.get('status.interval', 1.0)),
            persist_every=int(config.get('status.persist_every', 5)),
        )

        self.network_tools = network_tools or NetworkTools(
            session=self.session,
            timeout=float(config.get('site_check.timeout', 10)),
        )

    def _default_client_factory(self, binary, on_exit: Callable[[int], None]):
        return SingBoxClient(
            binary,
            self.config.run_dir,
            log_lines=int(self.config.get('engine.log_lines', 500)),
            on_exit=on_exit,
        )

    def start(self, channel=None):
        """Start background workers and the control channel"""
        self.monitor.start()
        if channel is not None:
            self.channel = channel
            channel.start()
        logger.info(f"Service started in {self.config.get('mode')} mode")

    def shutdown(self):
        """Stop the channel, the engine and the status monitor, in that order"""
        logger.info("Shutting down...")
        if self.channel is not None:
            self.channel.stop()
        self.controller.shutdown()
        self.monitor.stop()

    # Status

    def get_status(self) -> Dict:
        return self.controller.get_status().to_dict()

    def health(self) -> Dict:
        return {
            'status': 'ok',
            'mode': self.config.get('mode'),
            'version': __version__,
            'hub': self.channel.describe() if self.channel else None,
        }

    # Catalog

    def list_configs(self) -> List[Dict]:
        return [config.summary() for config in self.catalog.list_configs()]

    def list_servers(self, config_id: str) -> List[str]:
        return self.catalog.servers_for(config_id)

    # Subscriptions

    def list_subscriptions(self) -> List[Dict]:
        return [s.to_dict() for s in self.subscriptions.list()]

    def add_subscription(self, name: str, url: str) -> Dict:
        return self.subscriptions.add(name, url).to_dict()

    def refresh_subscription(self, subscription_id: str) -> Dict:
        return self.subscriptions.refresh(subscription_id).to_dict()

    def refresh_all(self) -> Dict[str, Optional[str]]:
        return self.subscriptions.refresh_all()

    def delete_subscription(self, subscription_id: str) -> Dict:
        """
        Remove a subscription; an active one is disconnected first

        The operation lock is held throughout so no connect can
        select the subscription in between.
        """
        with self.controller.exclusive():
            self.subscriptions.get(subscription_id)
            if self.controller.is_active(subscription_id):
                logger.info("Deleting the active subscription, disconnecting first")
                self.controller.disconnect()
            return self.subscriptions.remove(subscription_id).to_dict()

    # Settings

    def get_settings(self) -> Dict:
        return asdict(self.settings.get())

    def update_settings(self, partial: Dict[str, Any]) -> Dict:
        if not isinstance(partial, dict):
            raise ValidationError("Settings update must be an object")
        return asdict(self.settings.update(partial))

    def reset_settings(self) -> Dict:
        return asdict(self.settings.reset())

    # Connection

    def connect(self, config_id: Optional[str] = None,
                server: Optional[str] = None,
                cancel: Optional[threading.Event] = None) -> Dict:
        return self.controller.connect(config_id or None, server or None,
                                       cancel=cancel).to_dict()

    def disconnect(self) -> Dict:
        return self.controller.disconnect().to_dict()

    def get_logs(self) -> List[str]:
        return self.controller.logs()

    # Engine

    def engine_status(self) -> Dict:
        return asdict(self.installer.status())

    def install_engine(self) -> Dict:
        return asdict(self.installer.install())

    # Diagnostics

    def check_sites(self, name: Optional[str] = None) -> List[Dict]:
        return [asdict(result) for result in self.network_tools.check_sites(name)]
