"""
sing-box configuration document builder
"""

import copy
from typing import Dict, Any, Optional

from ..core.types import ServerDescriptor

INBOUND_MODES = ('mixed', 'tun')


class SingBoxConfigBuilder:
    """Wrap a server outbound into a runnable sing-box configuration"""

    def __init__(self, inbound: str = 'mixed', mixed_port: int = 2080,
                 clash_api: str = '127.0.0.1:9090',
                 clash_secret: str = '',
                 log_level: str = 'info'):
        if inbound not in INBOUND_MODES:
            raise ValueError(f"Unsupported inbound mode: {inbound}")
        self.inbound = inbound
        self.mixed_port = int(mixed_port)
        self.clash_api = clash_api
        self.clash_secret = clash_secret
        self.log_level = log_level

    def build(self, server: ServerDescriptor) -> Dict[str, Any]:
        outbound = copy.deepcopy(server.outbound)
        outbound['tag'] = 'proxy'

        clash_api: Dict[str, Any] = {'external_controller': self.clash_api}
        if self.clash_secret:
            clash_api['secret'] = self.clash_secret

        return {
            'log': {'level': self.log_level, 'timestamp': True},
            'dns': {
                'servers': [
                    {'tag': 'remote', 'address': 'tls://1.1.1.1',
                     'detour': 'proxy'},
                    {'tag': 'local', 'address': 'local', 'detour': 'direct'},
                ],
                'final': 'remote',
            },
            'inbounds': [self._inbound()],
            'outbounds': [
                outbound,
                {'type': 'direct', 'tag': 'direct'},
                {'type': 'block', 'tag': 'block'},
            ],
            'route': {
                'rules': [
                    {'ip_is_private': True, 'outbound': 'direct'},
                ],
                'final': 'proxy',
                'auto_detect_interface': True,
            },
            'experimental': {'clash_api': clash_api},
        }

    def _inbound(self) -> Dict[str, Any]:
        if self.inbound == 'tun':
            return {
                'type': 'tun',
                'tag': 'tun-in',
                'address': ['172.19.0.1/30'],
                'auto_route': True,
                'strict_route': True,
                'sniff': True,
            }
        return {
            'type': 'mixed',
            'tag': 'mixed-in',
            'listen': '127.0.0.1',
            'listen_port': self.mixed_port,
            'sniff': True,
        }


def clash_api_url(address: str) -> Optional[str]:
    """Base URL of the Clash API for an external_controller value"""
    if not address:
        return None
    if address.startswith('http'):
        return address.rstrip('/')
    return f'http://{address}'
