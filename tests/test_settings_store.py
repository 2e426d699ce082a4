import threading

import pytest
import yaml

from singnet.core.errors import ValidationError
from singnet.core.settings_store import SettingsStore
from singnet.core.types import Settings


def test_defaults_when_file_missing(tmp_path):
    store = SettingsStore(tmp_path / 'settings.yaml')
    assert store.get() == Settings()


def test_update_merges_only_given_fields(tmp_path):
    store = SettingsStore(tmp_path / 'settings.yaml')
    store.update({'default_config_id': 'abc', 'default_server': 'DE 1'})

    updated = store.update({'default_server': 'NL 1', 'singbox_path': None})

    assert updated.default_config_id == 'abc'
    assert updated.default_server == 'NL 1'
    assert updated.singbox_path == ''


def test_update_persists_and_reloads(tmp_path):
    path = tmp_path / 'settings.yaml'
    SettingsStore(path).update({'singbox_path': '/opt/sing-box'})

    assert yaml.safe_load(path.read_text())['singbox_path'] == '/opt/sing-box'
    assert SettingsStore(path).get().singbox_path == '/opt/sing-box'


@pytest.mark.parametrize('partial', [
    {'unknown': 'x'},
    {'default_server': 5},
])
def test_invalid_update_is_rejected_without_change(tmp_path, partial):
    store = SettingsStore(tmp_path / 'settings.yaml')
    store.update({'default_server': 'DE 1'})

    with pytest.raises(ValidationError):
        store.update(partial)

    assert store.get().default_server == 'DE 1'


def test_reset_restores_defaults(tmp_path):
    store = SettingsStore(tmp_path / 'settings.yaml')
    store.update({'default_config_id': 'abc', 'singbox_path': '/x'})

    assert store.reset() == Settings()
    assert SettingsStore(tmp_path / 'settings.yaml').get() == Settings()


def test_readers_never_see_partial_updates(tmp_path):
    store = SettingsStore(tmp_path / 'settings.yaml')
    pairs = [('a', 'A'), ('b', 'B')]
    stop = threading.Event()
    torn = []

    def writer():
        i = 0
        while not stop.is_set():
            config_id, server = pairs[i % 2]
            store.update({'default_config_id': config_id, 'default_server': server})
            i += 1

    def reader():
        while not stop.is_set():
            current = store.get()
            if (current.default_config_id, current.default_server) not in pairs + [('', '')]:
                torn.append(current)

    threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
    for t in threads:
        t.start()
    threading.Event().wait(0.3)
    stop.set()
    for t in threads:
        t.join()

    assert torn == []


def test_service_reset_leaves_subscriptions_untouched(service, subscription):
    service.update_settings({'default_config_id': subscription.id,
                             'default_server': 'NL 1'})

    settings = service.reset_settings()

    assert settings['default_config_id'] == ''
    assert settings['default_server'] == ''
    subs = service.list_subscriptions()
    assert [s['id'] for s in subs] == [subscription.id]
    assert subs[0]['server_count'] == 3
    assert service.list_servers(subscription.id) == ['DE 1', 'NL 1', 'US 1']
