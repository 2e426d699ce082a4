"""
Hub/module control protocol

In module mode the instance registers with a hub and long-polls it for
commands; every command maps onto a service operation through OPERATIONS.
In standalone mode the channel is a no-op.
"""

import threading
from typing import Optional, Dict, Any, Callable, List

import requests

from ..core.config_manager import ConfigManager
from ..core.errors import VPNManagerError, ValidationError
from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

INITIAL_BACKOFF = 1.0


def _require(params: Dict, key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Parameter {key!r} is required")
    return value.strip()


def _optional(params: Dict, key: str) -> Optional[str]:
    value = params.get(key)
    if value is None or value == '':
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Parameter {key!r} must be a string")
    return value


# op name -> handler(service, params)
OPERATIONS: Dict[str, Callable[[Any, Dict], Any]] = {
    'status': lambda s, p: s.get_status(),
    'health': lambda s, p: s.health(),
    'configs.list': lambda s, p: s.list_configs(),
    'servers.list': lambda s, p: s.list_servers(_require(p, 'config_id')),
    'subscriptions.list': lambda s, p: s.list_subscriptions(),
    'subscriptions.add': lambda s, p: s.add_subscription(
        _require(p, 'name'), _require(p, 'url')
    ),
    'subscriptions.refresh': lambda s, p: s.refresh_subscription(_require(p, 'id')),
    'subscriptions.refresh_all': lambda s, p: s.refresh_all(),
    'subscriptions.delete': lambda s, p: s.delete_subscription(_require(p, 'id')),
    'settings.get': lambda s, p: s.get_settings(),
    'settings.update': lambda s, p: s.update_settings(p),
    'settings.reset': lambda s, p: s.reset_settings(),
    'connect': lambda s, p, cancel=None: s.connect(
        _optional(p, 'config_id'), _optional(p, 'server'), cancel=cancel
    ),
    'disconnect': lambda s, p: s.disconnect(),
    'logs': lambda s, p: s.get_logs(),
    'engine.status': lambda s, p: s.engine_status(),
    'engine.install': lambda s, p: s.install_engine(),
    'sitecheck': lambda s, p: s.check_sites(_optional(p, 'name')),
}


# Operations that stop early when the caller's cancel event is set
CANCELLABLE = {'connect'}

def internal_error(exc: BaseException) -> Dict:
    """Error body for a failure outside the VPNManagerError hierarchy"""
    return {'kind': 'error', 'message': f"Internal error: {exc}"}


def dispatch(service, op: str, params: Optional[Dict] = None,
             cancel: Optional[threading.Event] = None) -> Dict:
    """
    Run one named operation

    cancel is forwarded to operations in CANCELLABLE.

    Returns:
        {'ok': True, 'result': ...} or {'ok': False, 'error': {kind, message}}
    """
    try:
        handler = OPERATIONS.get(op)
        if handler is None:
            raise ValidationError(f"Unknown operation: {op}")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise ValidationError("Operation parameters must be an object")
        if cancel is not None and op in CANCELLABLE:
            result = handler(service, params, cancel=cancel)
        else:
            result = handler(service, params)
    except VPNManagerError as e:
        logger.info(f"Operation {op} failed: {e.message}")
        return {'ok': False, 'error': e.to_dict()}
    except Exception as e:
        logger.exception(f"Operation {op} crashed")
        return {'ok': False, 'error': internal_error(e)}
    return {'ok': True, 'result': result}


class ControlChannel:
    """Remote control surface, selected once at startup"""

    def start(self):
        pass

    def stop(self):
        pass

    def describe(self) -> Optional[Dict]:
        return None


class NullChannel(ControlChannel):
    """Standalone mode: no remote control"""


class HubChannel(ControlChannel):
    """
    Module mode: register with the hub and serve its commands.

    Connection failures never stop the loop; the delay between attempts
    doubles from one second up to max_backoff and the module registers
    again once the hub answers.
    """

    def __init__(self, service, hub_address: str, module_id: str,
                 version: str, session: Optional[requests.Session] = None,
                 poll_timeout: float = 25, request_timeout: float = 10,
                 max_backoff: float = 60, http_addr: str = ''):
        self.service = service
        self.http_addr = http_addr
        self.hub_address = hub_address.rstrip('/')
        if not self.hub_address.startswith(('http://', 'https://')):
            self.hub_address = f'http://{self.hub_address}'
        self.module_id = module_id
        self.version = version
        self.session = session or requests.Session()
        self.poll_timeout = poll_timeout
        self.request_timeout = request_timeout
        self.max_backoff = max_backoff

        self.registered = False
        self.last_error: Optional[str] = None
        self._backoff = INITIAL_BACKOFF
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def module_url(self) -> str:
        return f'{self.hub_address}/api/v1/modules/{self.module_id}'

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="Hub-Channel"
        )
        self._thread.start()
        logger.info(f"Hub channel started for {self.hub_address}")

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self.request_timeout + 1)
        self._thread = None

    def describe(self) -> Dict:
        return {
            'address': self.hub_address,
            'module_id': self.module_id,
            'version': self.version,
            'registered': self.registered,
            'last_error': self.last_error,
        }

    def register(self):
        response = self.session.post(
            f'{self.hub_address}/api/v1/modules/register',
            json={
                'module_id': self.module_id,
                'version': self.version,
                'operations': sorted(OPERATIONS),
                'http_addr': self.http_addr,
            },
            timeout=self.request_timeout
        )
        response.raise_for_status()
        self.registered = True
        logger.info(f"Registered with hub as {self.module_id} {self.version}")

    def poll(self) -> List[Dict]:
        """Long-poll the hub for pending commands"""
        response = self.session.get(
            f'{self.module_url}/commands',
            params={'wait': int(self.poll_timeout)},
            timeout=self.poll_timeout + self.request_timeout
        )
        response.raise_for_status()
        if response.status_code == 204 or not response.content:
            return []
        data = response.json()
        if isinstance(data, dict):
            data = data.get('commands') or []
        if not isinstance(data, list):
            raise ValueError("Hub returned a malformed command list")
        return [command for command in data if isinstance(command, dict)]

    def handle(self, command: Dict):
        command_id = command.get('id')
        op = command.get('op', '')
        logger.debug(f"Hub command {command_id}: {op}")
        outcome = dispatch(self.service, op, command.get('params'),
                           cancel=self._stop_event)
        if command_id is None:
            return
        response = self.session.post(
            f'{self.module_url}/results/{command_id}',
            json=outcome,
            timeout=self.request_timeout
        )
        response.raise_for_status()

    def step(self) -> float:
        """
        One register/poll/handle round

        Returns:
            Seconds to wait before the next round (0 after success)
        """
        try:
            if not self.registered:
                self.register()
            for command in self.poll():
                self.handle(command)
        except (requests.RequestException, ValueError) as e:
            self.registered = False
            self.last_error = str(e)
            delay = self._backoff
            self._backoff = min(self._backoff * 2, self.max_backoff)
            logger.warning(f"Hub unreachable ({e}), retrying in {delay:g}s")
            return delay

        self.last_error = None
        self._backoff = INITIAL_BACKOFF
        return 0

    def _run(self):
        while not self._stop_event.is_set():
            try:
                delay = self.step()
            except Exception as e:
                logger.error(f"Hub channel error: {e}")
                delay = self.max_backoff
            if delay and self._stop_event.wait(delay):
                break
        logger.info("Hub channel stopped")


def build_channel(config: ConfigManager, service,
                  session: Optional[requests.Session] = None) -> ControlChannel:
    """Pick the control channel for the configured mode"""
    if not config.is_module:
        return NullChannel()
    return HubChannel(
        service,
        hub_address=config.get('hub.address'),
        module_id=config.get('hub.module_id'),
        version=config.get('hub.version'),
        session=session,
        poll_timeout=float(config.get('hub.poll_timeout', 25)),
        request_timeout=float(config.get('hub.request_timeout', 10)),
        max_backoff=float(config.get('hub.max_backoff', 60)),
        http_addr=f"{config.get('http.host')}:{config.get('http.port')}",
    )
