"""
Configuration Manager for runtime options
"""

import copy
import os
from pathlib import Path
from typing import Optional, Dict, Any
import logging

from .errors import ValidationError
from ..utils.persistence import read_yaml, write_yaml

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / '.config' / 'singnet'

MODES = ('standalone', 'module')

# Environment overrides, applied after the file is merged over defaults
ENV_OVERRIDES = {
    'SINGNET_MODE': 'mode',
    'SINGNET_HUB_ADDR': 'hub.address',
    'SINGNET_MODULE_ID': 'hub.module_id',
    'SINGNET_LOG_LEVEL': 'logging.level',
}


class ConfigManager:
    """Manage runtime configuration stored as YAML"""

    def __init__(self, data_dir: Optional[Path] = None,
                 overrides: Optional[Dict[str, Any]] = None,
                 use_env: bool = True):
        """
        Initialize configuration manager

        Args:
            data_dir: Directory for configuration and state files
            overrides: Dot-notation values that win over file and env
            use_env: Apply SINGNET_* environment variables
        """
        if data_dir is None:
            self.data_dir = DEFAULT_DATA_DIR
        else:
            self.data_dir = Path(data_dir)

        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.config_file = self.data_dir / 'config.yaml'
        self.settings_file = self.data_dir / 'settings.yaml'
        self.subscriptions_file = self.data_dir / 'subscriptions.json'
        self.traffic_file = self.data_dir / 'traffic.json'
        self.run_dir = self.data_dir / 'run'
        self.bin_dir = self.data_dir / 'bin'
        self.log_dir = self.data_dir / 'logs'

        self.default_config = {
            'mode': 'standalone',
            'http': {
                'host': '127.0.0.1',
                'port': 8787,
            },
            'hub': {
                'address': '',
                'module_id': 'net',
                'version': '1.0.0',
                'poll_timeout': 25,
                'request_timeout': 10,
                'max_backoff': 60,
            },
            'subscriptions': {
                'fetch_timeout': 20,
                'user_agent': 'singnet/1.0 (sing-box)',
                'refresh_workers': 4,
            },
            'engine': {
                'start_timeout': 15,
                'stop_grace': 5,
                'log_lines': 500,
                'inbound': 'mixed',
                'mixed_port': 2080,
                'clash_api': '127.0.0.1:9090',
                'log_level': 'info',
                'version': '1.10.7',
                'download_url': (
                    'https://github.com/SagerNet/sing-box/releases/download/'
                    'v{version}/sing-box-{version}-{os}-{arch}.{ext}'
                ),
                'download_timeout': 120,
            },
            'status': {
                'interval': 1.0,
                'persist_every': 5,
                'telemetry_timeout': 2,
            },
            'site_check': {
                'timeout': 10,
            },
            'logging': {
                'level': 'INFO',
                'file': str(self.log_dir / 'singnet.log'),
            },
        }

        self.config = self.load_config()
        if use_env:
            self._apply_env()
        for key, value in (overrides or {}).items():
            if value is not None:
                self._set_in_memory(key, value)
        self.validate()

    def load_config(self) -> Dict:
        """Load configuration from file or create default"""
        if self.config_file.exists():
            loaded = read_yaml(self.config_file, default={})
            if not isinstance(loaded, dict):
                logger.error("Config file is not a mapping, using defaults")
                return copy.deepcopy(self.default_config)
            merged = self._deep_merge(copy.deepcopy(self.default_config), loaded)
            logger.debug("Configuration loaded successfully")
            return merged

        # Create default config file
        write_yaml(self.config_file, self.default_config)
        return copy.deepcopy(self.default_config)

    def save_config(self):
        """Save configuration to file"""
        write_yaml(self.config_file, self.config)
        logger.debug("Configuration saved successfully")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get config value using dot notation

        Args:
            key: Config key (e.g., 'engine.start_timeout')
            default: Default value if key not found
        """
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """Set config value using dot notation and persist it"""
        self._set_in_memory(key, value)
        self.save_config()

    def validate(self):
        if self.get('mode') not in MODES:
            raise ValidationError(
                f"Unknown mode {self.get('mode')!r}, expected one of {MODES}"
            )
        if self.get('mode') == 'module':
            if not self.get('hub.address'):
                raise ValidationError("Module mode requires a hub address")
            if not self.get('hub.module_id') or not self.get('hub.version'):
                raise ValidationError(
                    "Module mode requires a module id and version"
                )

    @property
    def is_module(self) -> bool:
        return self.get('mode') == 'module'

    def _set_in_memory(self, key: str, value: Any):
        keys = key.split('.')
        config = self.config

        for k in keys[:-1]:
            if k not in config or not isinstance(config[k], dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def _apply_env(self):
        for env_name, key in ENV_OVERRIDES.items():
            value = os.environ.get(env_name, '').strip()
            if value:
                self._set_in_memory(key, value)

    @staticmethod
    def _deep_merge(base: Dict, update: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
