import io
import sys
import tarfile

import pytest
import requests

from singnet.core.errors import NetworkError, ProcessError
from singnet.providers import engine_installer
from singnet.providers.engine_installer import EngineInstaller
from singnet.utils import system_check

pytestmark = pytest.mark.skipif(sys.platform == 'win32',
                                reason="installs a shell script as the engine")

ENGINE = b'#!/bin/sh\necho "sing-box version 1.10.7"\n'
URL = 'https://dl.example/v{version}/sing-box-{version}-{os}-{arch}.{ext}'


def make_archive(files):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class DownloadResponse:
    def __init__(self, content, status_code=200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Not Found")


class DownloadSession:
    def __init__(self, content=b'', status_code=200, error=None):
        self.content = content
        self.status_code = status_code
        self.error = error
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return DownloadResponse(self.content, self.status_code)


@pytest.fixture(autouse=True)
def isolated_platform(monkeypatch):
    monkeypatch.setattr(system_check.shutil, 'which', lambda name: None)
    monkeypatch.setattr(system_check, 'WELL_KNOWN_PATHS', {})
    monkeypatch.setattr(engine_installer, 'engine_platform',
                        lambda: ('linux', 'amd64'))
    monkeypatch.setattr(engine_installer, 'is_windows', lambda: False)


def make_installer(tmp_path, session, override=''):
    return EngineInstaller(tmp_path / 'bin', path_override=lambda: override,
                           version='1.10.7', download_url=URL, session=session)


def test_status_when_missing(tmp_path):
    status = make_installer(tmp_path, DownloadSession()).status()
    assert status.installed is False
    assert status.path is None


def test_install_downloads_and_places_binary(tmp_path):
    archive = make_archive({
        'sing-box-1.10.7-linux-amd64/LICENSE': b'license',
        'sing-box-1.10.7-linux-amd64/sing-box': ENGINE,
    })
    session = DownloadSession(archive)
    installer = make_installer(tmp_path, session)

    status = installer.install()

    assert session.urls == [
        'https://dl.example/v1.10.7/sing-box-1.10.7-linux-amd64.tar.gz'
    ]
    assert status.installed is True
    assert status.path == str(tmp_path / 'bin' / 'sing-box')
    assert status.version == '1.10.7'
    assert (tmp_path / 'bin' / 'sing-box').read_bytes() == ENGINE


def test_install_is_a_noop_when_present(tmp_path):
    session = DownloadSession(make_archive({'x/sing-box': ENGINE}))
    installer = make_installer(tmp_path, session)
    installer.install()

    installer.install()

    assert len(session.urls) == 1


def test_configured_path_wins(tmp_path):
    custom = tmp_path / 'custom-sing-box'
    custom.write_bytes(ENGINE)
    custom.chmod(0o755)
    session = DownloadSession()

    status = make_installer(tmp_path, session, override=str(custom)).install()

    assert status.path == str(custom)
    assert session.urls == []


def test_corrupt_archive(tmp_path):
    installer = make_installer(tmp_path, DownloadSession(b'not a tarball'))

    with pytest.raises(ProcessError):
        installer.install()
    assert not (tmp_path / 'bin' / 'sing-box').exists()


def test_archive_without_binary(tmp_path):
    archive = make_archive({'x/README.md': b'hello'})

    with pytest.raises(ProcessError) as info:
        make_installer(tmp_path, DownloadSession(archive)).install()
    assert 'does not contain' in info.value.message


def test_download_failures_are_network_errors(tmp_path):
    with pytest.raises(NetworkError):
        make_installer(tmp_path, DownloadSession(status_code=404)).install()

    failing = DownloadSession(error=requests.ConnectionError("offline"))
    with pytest.raises(NetworkError):
        make_installer(tmp_path, failing).install()
