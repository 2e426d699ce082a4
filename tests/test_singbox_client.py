import json
import sys
import threading

import pytest

from singnet.core.errors import CancelledError, ProcessError
from singnet.providers.singbox_client import SingBoxClient

pytestmark = pytest.mark.skipif(sys.platform == 'win32',
                                reason="uses a shell script as the engine")

READY = """#!/bin/sh
echo "INFO loading $3"
trap 'echo "INFO stopping"; exit 0' TERM
echo "INFO sing-box started (0.01s)"
while true; do sleep 0.1; done
"""

CRASH = """#!/bin/sh
echo "FATAL decode config: unknown field"
exit 3
"""

SILENT = """#!/bin/sh
echo "INFO still loading"
exec sleep 30
"""

STUBBORN = """#!/bin/sh
trap '' TERM
echo "INFO sing-box started"
while true; do sleep 0.1; done
"""

DIES_LATER = """#!/bin/sh
echo "INFO sing-box started"
sleep 0.3
exit 4
"""


def make_engine(tmp_path, script):
    path = tmp_path / 'sing-box'
    path.write_text(script)
    path.chmod(0o755)
    return path


def make_client(tmp_path, script, **kwargs):
    return SingBoxClient(make_engine(tmp_path, script), tmp_path / 'run', **kwargs)


def test_start_waits_for_ready_line(tmp_path):
    client = make_client(tmp_path, READY)
    try:
        client.start({'log': {'level': 'info'}}, timeout=5)

        assert client.is_running()
        assert client.pid is not None
        assert json.loads(client.config_file.read_text()) == {'log': {'level': 'info'}}
        assert any('sing-box started' in line for line in client.logs())
    finally:
        client.stop(grace=2)

    assert not client.is_running()
    assert any('stopping' in line for line in client.logs())


def test_early_exit_raises_with_diagnostic(tmp_path):
    client = make_client(tmp_path, CRASH)

    with pytest.raises(ProcessError) as info:
        client.start({}, timeout=5)

    assert 'code 3' in info.value.message
    assert 'unknown field' in info.value.message
    assert client.returncode == 3


def test_startup_timeout_stops_process(tmp_path):
    client = make_client(tmp_path, SILENT)

    with pytest.raises(ProcessError) as info:
        client.start({}, timeout=0.5)

    assert 'did not become ready' in info.value.message
    assert not client.is_running()


def test_cancel_stops_pending_start(tmp_path):
    client = make_client(tmp_path, SILENT)
    cancel = threading.Event()
    threading.Timer(0.2, cancel.set).start()

    with pytest.raises(CancelledError):
        client.start({}, timeout=5, cancel=cancel)

    assert not client.is_running()


def test_stop_kills_after_grace(tmp_path):
    client = make_client(tmp_path, STUBBORN)
    client.start({}, timeout=5)

    client.stop(grace=0.3)

    assert not client.is_running()
    assert client.returncode is not None


def test_unexpected_exit_invokes_callback(tmp_path):
    exited = threading.Event()
    codes = []

    def on_exit(code):
        codes.append(code)
        exited.set()

    client = make_client(tmp_path, DIES_LATER, on_exit=on_exit)
    client.start({}, timeout=5)

    assert exited.wait(5)
    assert codes == [4]


def test_stop_does_not_report_unexpected_exit(tmp_path):
    codes = []
    client = make_client(tmp_path, READY, on_exit=codes.append)
    client.start({}, timeout=5)

    client.stop(grace=2)

    assert codes == []


def test_log_ring_buffer_is_bounded(tmp_path):
    script = """#!/bin/sh
i=0
while [ $i -lt 50 ]; do echo "INFO line $i"; i=$((i+1)); done
echo "INFO sing-box started"
while true; do sleep 0.1; done
"""
    client = make_client(tmp_path, script, log_lines=10)
    try:
        client.start({}, timeout=5)
        logs = client.logs()
        assert len(logs) <= 10
        assert logs[-1].endswith('sing-box started')
    finally:
        client.stop(grace=2)


def test_missing_binary(tmp_path):
    client = SingBoxClient(tmp_path / 'nope', tmp_path / 'run')

    with pytest.raises(ProcessError):
        client.start({}, timeout=1)


def test_unwritable_work_dir_is_a_process_error(tmp_path):
    blocker = tmp_path / 'run'
    blocker.write_text('not a directory')
    client = SingBoxClient(make_engine(tmp_path, READY), blocker)

    with pytest.raises(ProcessError) as info:
        client.start({}, timeout=1)

    assert 'Failed to write engine config' in info.value.message
    assert client.process is None
    assert any('config write failed' in line for line in client.logs())
