import threading

import pytest
import requests

from singnet.core.config_manager import ConfigManager
from singnet.core.errors import CancelledError
from singnet.core.service import VPNService


THREE_SERVERS = '\n'.join([
    'vless://11111111-1111-1111-1111-111111111111@de.example.com:443'
    '?security=tls&sni=de.example.com&type=ws&path=%2Fws#DE%201',
    'trojan://secret@nl.example.com:443?sni=nl.example.com#NL%201',
    'ss://YWVzLTI1Ni1nY206cGFzcw@us.example.com:8388#US%201',
])


class FakeResponse:
    def __init__(self, text='', status_code=200, headers=None, json_data=None):
        self.text = text
        self.status_code = status_code
        self.headers = headers or {}
        self._json = json_data
        self.content = text.encode('utf-8')
        self.reason = 'OK' if status_code < 400 else 'Error'

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """requests.Session stand-in that serves canned responses per URL"""

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.delay = None

    def set(self, url, body=None, status=200, headers=None, error=None):
        self.routes[url] = (body, status, headers, error)

    def get(self, url, **kwargs):
        self.calls.append(url)
        if self.delay is not None:
            self.delay.wait(5)
        if url not in self.routes:
            raise requests.ConnectionError(f"no route to {url}")
        body, status, headers, error = self.routes[url]
        if error is not None:
            raise error
        return FakeResponse(body or '', status, headers)


class FakeEngine:
    """In-memory engine client; records how many are alive at once"""

    lock = threading.Lock()
    alive = 0
    max_alive = 0
    instances = []
    fail_start = None
    start_delay = 0.0

    def __init__(self, binary, on_exit):
        self.binary = binary
        self.on_exit = on_exit
        self.running = False
        self.config = None
        self._logs = []
        self.returncode = None
        FakeEngine.instances.append(self)

    @classmethod
    def reset(cls):
        cls.alive = 0
        cls.max_alive = 0
        cls.instances = []
        cls.fail_start = None
        cls.start_delay = 0.0

    def start(self, config, timeout=15, cancel=None):
        self.config = config
        self._logs.append('sing-box started')
        if FakeEngine.fail_start is not None:
            self._logs.append('FATAL boom')
            raise FakeEngine.fail_start
        if cancel is not None and cancel.is_set():
            raise CancelledError("cancelled")
        with FakeEngine.lock:
            FakeEngine.alive += 1
            FakeEngine.max_alive = max(FakeEngine.max_alive, FakeEngine.alive)
        self.running = True
        if FakeEngine.start_delay:
            threading.Event().wait(FakeEngine.start_delay)

    def stop(self, grace=5):
        if self.running:
            with FakeEngine.lock:
                FakeEngine.alive -= 1
            self.running = False
            self.returncode = 0
        return self.returncode

    def crash(self, code=1):
        with FakeEngine.lock:
            FakeEngine.alive -= 1
        self.running = False
        self.returncode = code
        self._logs.append('FATAL crashed')
        self.on_exit(code)

    def is_running(self):
        return self.running

    def logs(self):
        return list(self._logs)


class FakeTelemetry:
    def __init__(self):
        self.download = 0
        self.upload = 0
        self.error = None

    def __call__(self):
        if self.error is not None:
            raise self.error
        return self.download, self.upload


class FakeTools:
    def __init__(self):
        self.calls = []

    def check_sites(self, name=None):
        self.calls.append(name)
        return []


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / 'data'


@pytest.fixture
def config(data_dir, monkeypatch):
    for name in ('SINGNET_MODE', 'SINGNET_HUB_ADDR', 'SINGNET_MODULE_ID',
                 'SINGNET_LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)
    return ConfigManager(data_dir=data_dir)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def fake_engine():
    FakeEngine.reset()
    yield FakeEngine
    FakeEngine.reset()


@pytest.fixture
def telemetry():
    return FakeTelemetry()


@pytest.fixture
def engine_binary(tmp_path):
    path = tmp_path / 'bin' / 'sing-box'
    path.parent.mkdir(parents=True)
    path.write_text('#!/bin/sh\n')
    path.chmod(0o755)
    return path


def build_service(config, session, telemetry, engine_binary):
    service = VPNService(
        config,
        session=session,
        client_factory=FakeEngine,
        telemetry=telemetry,
        network_tools=FakeTools(),
    )
    service.settings.update({'singbox_path': str(engine_binary)})
    return service


@pytest.fixture
def service(config, session, telemetry, engine_binary, fake_engine):
    svc = build_service(config, session, telemetry, engine_binary)
    yield svc
    svc.controller.shutdown()


@pytest.fixture
def subscription(service, session):
    session.set('https://example/sub', THREE_SERVERS)
    return service.subscriptions.add('test', 'https://example/sub')
