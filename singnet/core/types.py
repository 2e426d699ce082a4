"""
Type definitions for singnet
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, List, Dict, Any


class VPNState(Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'
    FAILED = 'failed'


@dataclass
class ServerDescriptor:
    """One connectable server from a subscription"""
    label: str
    outbound: Dict[str, Any]

    @classmethod
    def from_dict(cls, data: Dict) -> 'ServerDescriptor':
        return cls(
            label=data['label'],
            outbound=dict(data.get('outbound') or {}),
        )


@dataclass
class Subscription:
    """Remote source of servers"""
    id: str
    name: str
    url: str
    servers: List[ServerDescriptor] = field(default_factory=list)
    last_error: Optional[str] = None
    expires_at: Optional[int] = None
    updated_at: Optional[float] = None

    @property
    def labels(self) -> List[str]:
        return [server.label for server in self.servers]

    def to_dict(self, include_servers: bool = False) -> Dict:
        data = {
            'id': self.id,
            'name': self.name,
            'url': self.url,
            'server_count': len(self.servers),
            'last_error': self.last_error,
            'expires_at': self.expires_at,
            'updated_at': self.updated_at,
        }
        if include_servers:
            data['servers'] = [asdict(server) for server in self.servers]
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Subscription':
        return cls(
            id=data['id'],
            name=data['name'],
            url=data['url'],
            servers=[
                ServerDescriptor.from_dict(item)
                for item in data.get('servers', [])
            ],
            last_error=data.get('last_error'),
            expires_at=data.get('expires_at'),
            updated_at=data.get('updated_at'),
        )


@dataclass
class VpnConfig:
    """Engine configuration derived from a subscription"""
    id: str
    name: str
    server: Optional[str]
    config: Dict[str, Any] = field(default_factory=dict)
    server_count: int = 0

    def summary(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'server': self.server,
            'server_count': self.server_count,
        }


@dataclass
class TrafficTotals:
    download: int = 0
    upload: int = 0

    def add(self, download: int, upload: int):
        self.download += max(0, download)
        self.upload += max(0, upload)


@dataclass
class ConnectionState:
    """Process-wide connection snapshot"""
    state: VPNState = VPNState.IDLE
    active_config_id: Optional[str] = None
    server: Optional[str] = None
    download_speed: float = 0.0
    upload_speed: float = 0.0
    session: TrafficTotals = field(default_factory=TrafficTotals)
    lifetime: TrafficTotals = field(default_factory=TrafficTotals)
    last_error: Optional[str] = None
    connected_since: Optional[float] = None

    @property
    def connected(self) -> bool:
        return self.state == VPNState.RUNNING

    @property
    def uptime(self) -> float:
        if not self.connected or self.connected_since is None:
            return 0.0
        return max(0.0, time.time() - self.connected_since)

    def copy(self) -> 'ConnectionState':
        return ConnectionState(
            state=self.state,
            active_config_id=self.active_config_id,
            server=self.server,
            download_speed=self.download_speed,
            upload_speed=self.upload_speed,
            session=TrafficTotals(self.session.download, self.session.upload),
            lifetime=TrafficTotals(
                self.lifetime.download, self.lifetime.upload
            ),
            last_error=self.last_error,
            connected_since=self.connected_since,
        )

    def to_dict(self) -> Dict:
        return {
            'state': self.state.value,
            'connected': self.connected,
            'active_config_id': self.active_config_id,
            'server': self.server,
            'download_speed': self.download_speed,
            'upload_speed': self.upload_speed,
            'total_download': self.session.download,
            'total_upload': self.session.upload,
            'lifetime_download': self.lifetime.download,
            'lifetime_upload': self.lifetime.upload,
            'last_error': self.last_error,
            'connected_since': self.connected_since,
            'uptime': self.uptime,
        }


@dataclass(frozen=True)
class Settings:
    """User preferences"""
    default_config_id: str = ''
    default_server: str = ''
    singbox_path: str = ''


@dataclass
class EngineInstallStatus:
    installed: bool
    path: Optional[str] = None
    version: Optional[str] = None


@dataclass
class CheckResult:
    """Result of probing one site"""
    name: str
    url: str
    ok: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None
