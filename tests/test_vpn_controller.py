import threading

import pytest

from singnet.core.errors import (
    CancelledError, NotFoundError, ProcessError, UnresolvableError,
    ValidationError
)
from singnet.core.types import VPNState


def test_connect_runs_engine_with_generated_config(service, subscription, fake_engine):
    status = service.connect(subscription.id, 'NL 1')

    assert status['state'] == 'running'
    assert status['connected'] is True
    assert status['active_config_id'] == subscription.id
    assert status['server'] == 'NL 1'
    engine = fake_engine.instances[-1]
    assert engine.config['outbounds'][0]['server'] == 'nl.example.com'


def test_connect_falls_back_to_default_settings(service, subscription):
    service.update_settings({'default_config_id': subscription.id,
                             'default_server': 'US 1'})

    status = service.connect()

    assert status['active_config_id'] == subscription.id
    assert status['server'] == 'US 1'


def test_default_server_missing_from_list_uses_first(service, subscription):
    service.update_settings({'default_server': 'Gone'})

    assert service.connect(subscription.id)['server'] == 'DE 1'


def test_connect_without_config_or_default(service):
    with pytest.raises(ValidationError):
        service.connect()
    assert service.get_status()['state'] == 'idle'


def test_connect_resolution_errors_leave_state_alone(service, subscription):
    with pytest.raises(NotFoundError):
        service.connect('missing')
    with pytest.raises(UnresolvableError):
        service.connect(subscription.id, 'Mars 1')

    status = service.get_status()
    assert status['state'] == 'idle'
    assert status['last_error'] is None


def test_disconnect_is_idempotent(service, subscription):
    first = service.disconnect()
    second = service.disconnect()
    assert first == second
    assert first['state'] == 'idle'

    service.connect(subscription.id)
    service.disconnect()
    again = service.disconnect()
    assert again['state'] == 'idle'
    assert again['connected'] is False
    assert again['active_config_id'] is None


def test_concurrent_connects_leave_one_engine(service, subscription, fake_engine):
    fake_engine.start_delay = 0.05
    errors = []

    def connect(server):
        try:
            service.connect(subscription.id, server)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=connect, args=(label,))
               for label in ('DE 1', 'NL 1', 'US 1', 'DE 1')]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert fake_engine.max_alive == 1
    assert fake_engine.alive == 1
    assert sum(1 for e in fake_engine.instances if e.is_running()) == 1
    assert service.get_status()['state'] == 'running'


def test_reconnect_replaces_running_engine(service, subscription, fake_engine):
    service.connect(subscription.id, 'DE 1')
    first = fake_engine.instances[-1]

    service.connect(subscription.id, 'US 1')

    assert not first.is_running()
    assert fake_engine.alive == 1
    assert service.get_status()['server'] == 'US 1'


def test_start_failure_goes_idle_with_error(service, subscription, fake_engine):
    states = []
    service.controller.register_callback('state_change', lambda s, *a: states.append(s))
    fake_engine.fail_start = ProcessError("sing-box exited with code 1")

    with pytest.raises(ProcessError):
        service.connect(subscription.id)

    status = service.get_status()
    assert status['state'] == 'idle'
    assert status['active_config_id'] is None
    assert 'exited with code 1' in status['last_error']
    assert states == [VPNState.STARTING, VPNState.FAILED, VPNState.IDLE]
    assert 'FATAL boom' in service.get_logs()


def test_missing_binary_is_a_process_error(service, subscription, monkeypatch):
    monkeypatch.setattr(service.installer, 'resolve_path', lambda: None)

    with pytest.raises(ProcessError):
        service.connect(subscription.id)

    status = service.get_status()
    assert status['state'] == 'idle'
    assert 'not found' in status['last_error']


def test_cancelled_connect_leaves_no_engine(service, subscription, fake_engine):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(CancelledError):
        service.connect(subscription.id, cancel=cancel)

    assert fake_engine.alive == 0
    assert service.get_status()['state'] == 'idle'


def test_unexpected_exit_fails_then_idles(service, subscription, fake_engine):
    service.connect(subscription.id)
    engine = fake_engine.instances[-1]

    engine.crash(code=2)

    status = service.get_status()
    assert status['state'] == 'idle'
    assert 'code 2' in status['last_error']
    assert 'FATAL crashed' in service.get_logs()
    assert service.controller._client is None
    assert not service.controller.is_active(subscription.id)
    assert service.disconnect()['state'] == 'idle'


def test_stale_exit_callback_is_ignored(service, subscription, fake_engine):
    service.connect(subscription.id, 'DE 1')
    old = fake_engine.instances[-1]
    service.connect(subscription.id, 'NL 1')

    old.on_exit(9)

    status = service.get_status()
    assert status['state'] == 'running'
    assert status['server'] == 'NL 1'


def test_logs_survive_disconnect_and_clear_on_connect(service, subscription, fake_engine):
    service.connect(subscription.id)
    fake_engine.instances[-1]._logs.append('last session line')
    service.disconnect()

    assert 'last session line' in service.get_logs()

    service.connect(subscription.id)
    assert 'last session line' not in service.get_logs()


def test_session_totals_reset_on_every_connect(service, subscription):
    controller = service.controller
    service.connect(subscription.id)
    controller.record_traffic(controller.session_id, 100, 50, 10.0, 5.0)
    assert service.get_status()['total_download'] == 100

    service.connect(subscription.id, 'NL 1')

    status = service.get_status()
    assert status['total_download'] == 0
    assert status['total_upload'] == 0
    assert status['lifetime_download'] == 100
    assert status['lifetime_upload'] == 50


def test_traffic_for_finished_session_is_dropped(service, subscription):
    controller = service.controller
    service.connect(subscription.id)
    old_session = controller.session_id
    service.disconnect()

    assert controller.record_traffic(old_session, 100, 100, 1.0, 1.0) is False
    assert service.get_status()['lifetime_download'] == 0


def test_deleting_active_subscription_disconnects_first(service, subscription, fake_engine):
    service.connect(subscription.id)

    service.delete_subscription(subscription.id)

    status = service.get_status()
    assert status['connected'] is False
    assert status['active_config_id'] is None
    assert fake_engine.alive == 0
    assert all(c['id'] != subscription.id for c in service.list_configs())


def test_deleting_inactive_subscription_keeps_connection(service, session, subscription):
    session.set('https://other/sub', 'trojan://x@o.example:443#Other')
    other = service.subscriptions.add('other', 'https://other/sub')
    service.connect(subscription.id)

    service.delete_subscription(other.id)

    assert service.get_status()['state'] == 'running'


def test_unexpected_start_error_becomes_process_error(service, subscription, fake_engine):
    fake_engine.fail_start = OSError("No space left on device")

    with pytest.raises(ProcessError) as info:
        service.connect(subscription.id)

    assert 'No space left on device' in info.value.message
    status = service.get_status()
    assert status['state'] == 'idle'
    assert status['active_config_id'] is None
    assert 'No space left' in status['last_error']
    assert not service.controller.is_active(subscription.id)


def test_unwritable_run_dir_fails_connect(config, session, telemetry, engine_binary,
                                          subscription):
    from singnet.core.service import VPNService
    from conftest import FakeTools

    real = VPNService(config, session=session, telemetry=telemetry,
                      network_tools=FakeTools())
    real.settings.update({'singbox_path': str(engine_binary)})
    config.run_dir.parent.mkdir(parents=True, exist_ok=True)
    config.run_dir.write_text('not a directory')

    with pytest.raises(ProcessError) as info:
        real.connect(subscription.id)

    assert 'Failed to write engine config' in info.value.message
    status = real.get_status()
    assert status['state'] == 'idle'
    assert status['active_config_id'] is None
    assert 'Failed to write engine config' in status['last_error']
    assert not real.controller.is_active(subscription.id)
    assert any('config write failed' in line for line in real.get_logs())
