"""
Traffic status aggregation for the running engine
"""

import threading
import time
from pathlib import Path
from typing import Optional, Callable, Tuple

from .errors import VPNManagerError
from .types import TrafficTotals
from .vpn_controller import VPNController
from ..utils.logging_setup import get_logger
from ..utils.persistence import read_json, write_json

logger = get_logger(__name__)

# () -> (download_total, upload_total) in bytes
Telemetry = Callable[[], Tuple[int, int]]


def load_lifetime(path: Path) -> TrafficTotals:
    """Read persisted lifetime totals; missing or damaged files start at zero"""
    data = read_json(path, {})
    try:
        return TrafficTotals(
            download=max(0, int(data.get('download', 0))),
            upload=max(0, int(data.get('upload', 0))),
        )
    except (AttributeError, TypeError, ValueError):
        logger.warning(f"Ignoring malformed traffic file: {path}")
        return TrafficTotals()


class StatusMonitor:
    """Samples engine counters while a session is running"""

    def __init__(self, controller: VPNController, telemetry: Telemetry,
                 traffic_file: Path, interval: float = 1.0,
                 persist_every: int = 5,
                 clock: Callable[[], float] = time.monotonic):
        self.controller = controller
        self.telemetry = telemetry
        self.traffic_file = Path(traffic_file)
        self.interval = interval
        self.persist_every = max(1, int(persist_every))
        self.clock = clock

        self._lock = threading.Lock()
        self._session: Optional[int] = None
        self._baseline: Tuple[int, int] = (0, 0)
        self._last_tick: Optional[float] = None
        self._ticks = 0

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        controller.register_callback('session_start', self._on_session_start)
        controller.register_callback('session_end', self._on_session_end)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="Status-Monitor"
        )
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None
        self.persist()

    def persist(self):
        lifetime = self.controller.get_status().lifetime
        write_json(self.traffic_file, {
            'download': lifetime.download,
            'upload': lifetime.upload,
        })

    def poll_once(self, now: Optional[float] = None) -> bool:
        """
        Take one telemetry sample

        Returns:
            True if the sample was recorded
        """
        session = self.controller.session_id
        if session is None:
            return False

        try:
            download_total, upload_total = self.telemetry()
        except VPNManagerError as e:
            logger.debug(f"Status tick skipped: {e}")
            return False

        now = self.clock() if now is None else now
        with self._lock:
            if session != self._session:
                self._begin(session, now)

            base_down, base_up = self._baseline
            delta_down = max(0, download_total - base_down)
            delta_up = max(0, upload_total - base_up)
            elapsed = now - self._last_tick if self._last_tick is not None else 0

            self._baseline = (download_total, upload_total)
            self._last_tick = now

        if elapsed > 0:
            speed_down = delta_down / elapsed
            speed_up = delta_up / elapsed
        else:
            speed_down = speed_up = 0.0

        recorded = self.controller.record_traffic(
            session, delta_down, delta_up, speed_down, speed_up
        )
        if recorded:
            self._ticks += 1
            if self._ticks % self.persist_every == 0:
                self._persist_quietly()
        return recorded

    def _begin(self, session: int, now: float):
        # caller holds _lock
        self._session = session
        self._baseline = (0, 0)
        self._last_tick = now

    def _on_session_start(self, session: int):
        with self._lock:
            self._begin(session, self.clock())

    def _on_session_end(self, session: int):
        with self._lock:
            if self._session == session:
                self._session = None
        self._persist_quietly()

    def _persist_quietly(self):
        try:
            self.persist()
        except VPNManagerError as e:
            logger.error(f"Failed to persist traffic totals: {e}")

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Status monitor error: {e}")
