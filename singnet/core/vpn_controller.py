"""
Connection supervisor: owns the engine process and the connection state machine
"""

import threading
import time
from contextlib import contextmanager
from typing import Optional, Dict, List, Callable, Any

from .catalog import ConfigCatalog
from .errors import ProcessError, CancelledError, ValidationError
from .settings_store import SettingsStore
from .types import ConnectionState, TrafficTotals, VPNState
from ..providers.engine_installer import EngineInstaller
from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

# (binary, on_exit) -> engine client with start/stop/logs/is_running
ClientFactory = Callable[[Any, Callable[[int], None]], Any]


class VPNController:
    """
    Supervises a single engine process.

    connect/disconnect are serialized by an operation lock; the connection
    snapshot is guarded by a separate state lock so readers never wait for
    an engine start.
    """

    def __init__(self, catalog: ConfigCatalog, settings: SettingsStore,
                 installer: EngineInstaller, client_factory: ClientFactory,
                 start_timeout: float = 15, stop_grace: float = 5,
                 lifetime: Optional[TrafficTotals] = None):
        self.catalog = catalog
        self.settings = settings
        self.installer = installer
        self.client_factory = client_factory
        self.start_timeout = start_timeout
        self.stop_grace = stop_grace

        self._op_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._state = ConnectionState(lifetime=lifetime or TrafficTotals())
        self._client = None
        self._last_logs: List[str] = []
        self._generation = 0

        self._callbacks: Dict[str, List[Callable]] = {
            'state_change': [],
            'session_start': [],
            'session_end': []
        }

    def register_callback(self, event: str, callback: Callable):
        """Register event callback"""
        if event in self._callbacks:
            self._callbacks[event].append(callback)

    def _notify_callbacks(self, event: str, *args, **kwargs):
        for callback in self._callbacks.get(event, []):
            try:
                callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Callback error ({event}): {e}")

    @contextmanager
    def exclusive(self):
        """Hold the operation lock, e.g. while deleting the active subscription"""
        with self._op_lock:
            yield self

    @property
    def state(self) -> VPNState:
        with self._state_lock:
            return self._state.state

    @property
    def session_id(self) -> Optional[int]:
        """Token of the running session, None unless Running"""
        with self._state_lock:
            if self._state.state != VPNState.RUNNING:
                return None
            return self._generation

    def get_status(self) -> ConnectionState:
        with self._state_lock:
            return self._state.copy()

    def is_active(self, config_id: str) -> bool:
        with self._state_lock:
            return (self._state.state != VPNState.IDLE
                    and self._state.active_config_id == config_id)

    def connect(self, config_id: Optional[str] = None,
                server: Optional[str] = None,
                cancel: Optional[threading.Event] = None) -> ConnectionState:
        """
        Connect to a server of a config, replacing any running session

        Args:
            config_id: Config to use, the default config when omitted
            server: Server label, the default server or the first one when omitted
            cancel: Set by the caller to abort a pending start

        Raises:
            ValidationError: no config given and no default configured
            NotFoundError / UnresolvableError: config or server cannot be resolved
            ProcessError: engine missing, crashed or did not become ready
            CancelledError: cancel was set before the engine became ready
        """
        with self._op_lock:
            settings = self.settings.get()
            config_id = config_id or settings.default_config_id
            if not config_id:
                raise ValidationError("No config given and no default config set")

            if not server and settings.default_server:
                if settings.default_server in self.catalog.servers_for(config_id):
                    server = settings.default_server

            vpn_config = self.catalog.config_for(config_id, server)

            self._stop_engine()

            logger.info(f"Connecting to {vpn_config.name} / {vpn_config.server}")
            with self._state_lock:
                self._generation += 1
                generation = self._generation
                self._reset_session()
                self._state.state = VPNState.STARTING
                self._state.active_config_id = vpn_config.id
                self._state.server = vpn_config.server
                self._state.last_error = None
            self._last_logs = []
            self._notify_callbacks('state_change', VPNState.STARTING)

            binary = self.installer.resolve_path()
            if binary is None:
                error = ProcessError("sing-box binary not found, install it first")
                self._fail(str(error))
                raise error

            try:
                client = self.client_factory(
                    binary, lambda code: self._on_engine_exit(generation, code)
                )
                self._client = client
                client.start(vpn_config.config, timeout=self.start_timeout,
                             cancel=cancel)
            except CancelledError as e:
                logger.warning("Connect cancelled, engine stopped")
                self._release_client()
                self._set_idle(last_error=str(e))
                raise
            except ProcessError as e:
                logger.error(f"Engine failed to start: {e}")
                self._release_client()
                self._fail(str(e))
                raise
            except Exception as e:
                logger.exception("Engine failed to start")
                self._abandon_client()
                error = ProcessError(f"Failed to start sing-box: {e}")
                self._fail(error.message)
                raise error from e

            with self._state_lock:
                if not client.is_running():
                    code = client.returncode
                    running = False
                else:
                    self._reset_session()
                    self._state.state = VPNState.RUNNING
                    self._state.connected_since = time.time()
                    running = True

            if not running:
                self._release_client()
                message = f"sing-box exited right after start with code {code}"
                self._fail(message)
                raise ProcessError(message)

            logger.info(f"Connected via {vpn_config.server}")
            self._notify_callbacks('state_change', VPNState.RUNNING)
            self._notify_callbacks('session_start', generation)
            return self.get_status()

    def disconnect(self) -> ConnectionState:
        """Stop the engine; a no-op when already idle"""
        with self._op_lock:
            if self._client is None and self.state == VPNState.IDLE:
                return self.get_status()
            self._stop_engine()
            return self.get_status()

    def shutdown(self):
        self.disconnect()

    def logs(self) -> List[str]:
        """Engine output of the current or last session"""
        client = self._client
        if client is not None:
            return client.logs()
        return list(self._last_logs)

    def record_traffic(self, session_id: int, download: int, upload: int,
                       download_speed: float, upload_speed: float) -> bool:
        """
        Accumulate a telemetry sample into session and lifetime totals

        Returns:
            False if the sample belongs to a session that is no longer running
        """
        with self._state_lock:
            if (self._state.state != VPNState.RUNNING
                    or session_id != self._generation):
                return False
            self._state.session.add(download, upload)
            self._state.lifetime.add(download, upload)
            self._state.download_speed = max(0.0, download_speed)
            self._state.upload_speed = max(0.0, upload_speed)
            return True

    def _stop_engine(self):
        client = self._client
        if client is None:
            return

        with self._state_lock:
            was_running = self._state.state == VPNState.RUNNING
            generation = self._generation
            stopping = self._state.state != VPNState.IDLE
            if stopping:
                self._state.state = VPNState.STOPPING
        if stopping:
            self._notify_callbacks('state_change', VPNState.STOPPING)

        logger.info("Disconnecting...")
        try:
            client.stop(self.stop_grace)
        finally:
            self._release_client()
            if was_running:
                self._notify_callbacks('session_end', generation)
            self._set_idle()
        logger.info("Disconnected")

    def _abandon_client(self):
        client = self._client
        if client is not None:
            try:
                client.stop(self.stop_grace)
            except Exception as e:
                logger.error(f"Failed to stop engine after a start error: {e}")
        self._release_client()

    def _release_client(self):
        client = self._client
        if client is not None:
            self._last_logs = client.logs()
        self._client = None

    def _on_engine_exit(self, generation: int, code: int):
        """Monitor-thread callback for an exit nobody asked for"""
        if self._fail(f"sing-box exited unexpectedly with code {code}",
                      generation=generation):
            logger.error(f"Engine exited unexpectedly (code {code})")
            self._release_exited(generation)
            self._notify_callbacks('session_end', generation)

    def _release_exited(self, generation: int):
        # the dead handle is dropped unless a newer session already replaced it
        with self._state_lock:
            if generation != self._generation:
                return
            client = self._client
            self._client = None
        if client is not None:
            self._last_logs = client.logs()

    def _fail(self, message: str, generation: Optional[int] = None) -> bool:
        with self._state_lock:
            if generation is not None and (
                    generation != self._generation
                    or self._state.state != VPNState.RUNNING):
                return False
            self._state.state = VPNState.FAILED
            self._state.last_error = message
        self._notify_callbacks('state_change', VPNState.FAILED, message)
        self._set_idle(last_error=message)
        return True

    def _set_idle(self, last_error: Optional[str] = None):
        with self._state_lock:
            self._state.state = VPNState.IDLE
            self._state.active_config_id = None
            self._state.server = None
            self._state.connected_since = None
            self._reset_session()
            if last_error is not None:
                self._state.last_error = last_error
        self._notify_callbacks('state_change', VPNState.IDLE)

    def _reset_session(self):
        # caller holds _state_lock
        self._state.session = TrafficTotals()
        self._state.download_speed = 0.0
        self._state.upload_speed = 0.0
