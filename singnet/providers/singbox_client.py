"""
sing-box process wrapper
"""

import collections
import json
import subprocess
import threading
import time
from pathlib import Path
from typing import Optional, Dict, List, Callable, Any
import logging

from ..core.errors import ProcessError, CancelledError, PersistenceError
from ..utils.persistence import atomic_write_text
from ..utils.system_check import hidden_window_kwargs

logger = logging.getLogger(__name__)

READY_MARKER = 'sing-box started'
DIAGNOSTIC_LINES = 20


class SingBoxClient:
    """Runs one sing-box process and captures its output"""

    def __init__(self, binary: Path, work_dir: Path, log_lines: int = 500,
                 on_exit: Optional[Callable[[int], None]] = None):
        """
        Args:
            binary: Engine executable
            work_dir: Directory for the transient config file
            log_lines: Capacity of the output ring buffer
            on_exit: Called with the return code when the process exits
                on its own (not through stop())
        """
        self.binary = Path(binary)
        self.work_dir = Path(work_dir)
        self.config_file = self.work_dir / 'config.json'
        self.on_exit = on_exit
        self.process: Optional[subprocess.Popen] = None
        self._log = collections.deque(maxlen=max(1, int(log_lines)))
        self._log_lock = threading.Lock()
        self._ready = threading.Event()
        self._stopping = False
        self._monitor_thread: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll() if self.process else None

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def logs(self) -> List[str]:
        with self._log_lock:
            return list(self._log)

    def start(self, config: Dict[str, Any], timeout: float = 15,
              cancel: Optional[threading.Event] = None):
        """
        Write the config, spawn sing-box and wait until it reports ready

        Raises:
            ProcessError: config write or spawn failure, early exit or
                startup timeout
            CancelledError: cancel was set while waiting
        """
        if self.process is not None:
            raise ProcessError("Engine client already used")

        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_text(self.config_file, json.dumps(config, indent=2))
        except (OSError, PersistenceError) as e:
            self._append(f"config write failed: {e}")
            raise ProcessError(f"Failed to write engine config: {e}") from e

        cmd = [str(self.binary), 'run', '-c', str(self.config_file)]
        logger.info(f"Starting engine: {' '.join(cmd)}")

        try:
            self.process = subprocess.Popen(
                cmd,
                cwd=str(self.work_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
                encoding='utf-8',
                errors='replace',
                **hidden_window_kwargs()
            )
        except OSError as e:
            self._append(f"spawn failed: {e}")
            raise ProcessError(f"Failed to start sing-box: {e}") from e

        self._start_monitoring()
        self._wait_for_ready(timeout, cancel)

    def stop(self, grace: float = 5) -> Optional[int]:
        """Terminate the process, killing it after the grace period"""
        self._stopping = True
        if self.process is None:
            return None

        if self.process.poll() is None:
            logger.info("Stopping engine...")
            self.process.terminate()
            try:
                self.process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                logger.warning("Engine did not exit in time, killing it")
                self.process.kill()
                self.process.wait()

        if self._monitor_thread and self._monitor_thread is not threading.current_thread():
            self._monitor_thread.join(timeout=5)

        code = self.process.returncode
        logger.info(f"Engine stopped (exit code {code})")
        return code

    def diagnostic(self) -> str:
        """Last lines of output, used as error detail"""
        return '\n'.join(self.logs()[-DIAGNOSTIC_LINES:])

    def _append(self, line: str):
        with self._log_lock:
            self._log.append(line)

    def _start_monitoring(self):
        self._monitor_thread = threading.Thread(
            target=self._monitor_output,
            daemon=True,
            name="SingBox-Monitor"
        )
        self._monitor_thread.start()

    def _monitor_output(self):
        """Read engine output until the process closes stdout"""
        stream = self.process.stdout if self.process else None
        if stream is None:
            return

        for line in iter(stream.readline, ''):
            line = line.rstrip()
            if not line:
                continue
            self._append(line)

            if READY_MARKER in line:
                logger.info("sing-box reported ready")
                self._ready.set()
            elif 'FATAL' in line or 'ERROR' in line:
                logger.error(f"sing-box: {line}")
            elif 'WARN' in line:
                logger.warning(f"sing-box: {line}")
            else:
                logger.debug(f"sing-box: {line}")

        stream.close()
        code = self.process.wait()
        if not self._stopping:
            logger.error(f"sing-box exited unexpectedly with code {code}")
            if self.on_exit is not None:
                self.on_exit(code)

    def _wait_for_ready(self, timeout: float,
                        cancel: Optional[threading.Event]):
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            if self._ready.wait(0.1):
                return

            if cancel is not None and cancel.is_set():
                self.stop()
                raise CancelledError("Connect cancelled while engine was starting")

            if self.process.poll() is not None:
                self._stopping = True
                if self._monitor_thread:
                    self._monitor_thread.join(timeout=2)
                raise ProcessError(
                    f"sing-box exited with code {self.process.returncode}:\n"
                    f"{self.diagnostic()}"
                )

        self.stop()
        raise ProcessError(
            f"sing-box did not become ready within {timeout:g}s:\n"
            f"{self.diagnostic()}"
        )
