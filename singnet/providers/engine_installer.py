"""
sing-box binary discovery and installation
"""

import io
import os
import tarfile
import tempfile
import threading
import zipfile
import logging
from pathlib import Path
from typing import Optional, Callable

import requests

from ..core.errors import NetworkError, PersistenceError, ProcessError
from ..core.types import EngineInstallStatus
from ..utils.system_check import (
    engine_binary_name, engine_platform, find_engine_binary,
    get_engine_version, is_windows
)

logger = logging.getLogger(__name__)


class EngineInstaller:
    """Probe for the engine binary and download it when missing"""

    def __init__(self, install_dir: Path,
                 path_override: Callable[[], str] = lambda: '',
                 version: str = '1.10.7',
                 download_url: str = '',
                 session: Optional[requests.Session] = None,
                 timeout: float = 120):
        """
        Args:
            install_dir: Where install() places the binary
            path_override: Returns the user-configured binary path, if any
            version: Release to download
            download_url: Template with {version}, {os}, {arch}, {ext}
        """
        self.install_dir = Path(install_dir)
        self.path_override = path_override
        self.version = version
        self.download_url = download_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self._lock = threading.Lock()

    def resolve_path(self) -> Optional[Path]:
        return find_engine_binary(self.path_override(), self.install_dir)

    def status(self) -> EngineInstallStatus:
        path = self.resolve_path()
        if path is None:
            return EngineInstallStatus(installed=False)
        return EngineInstallStatus(
            installed=True, path=str(path), version=get_engine_version(path)
        )

    def install(self) -> EngineInstallStatus:
        """Download and place the binary; no-op when already installed"""
        with self._lock:
            current = self.status()
            if current.installed:
                logger.info(f"sing-box already installed at {current.path}")
                return current

            try:
                system, arch = engine_platform()
            except RuntimeError as e:
                raise ProcessError(str(e)) from e
            ext = 'zip' if is_windows() else 'tar.gz'
            url = self.download_url.format(
                version=self.version, os=system, arch=arch, ext=ext
            )
            logger.info(f"Downloading sing-box {self.version} from {url}")

            try:
                response = self.session.get(url, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as e:
                raise NetworkError(f"Download failed: {e}") from e

            binary = self._extract(response.content, ext)
            target = self.install_dir / engine_binary_name()
            self._place(binary, target)
            logger.info(f"sing-box installed at {target}")

            return self.status()

    def _extract(self, archive: bytes, ext: str) -> bytes:
        name = engine_binary_name()
        try:
            if ext == 'zip':
                with zipfile.ZipFile(io.BytesIO(archive)) as zf:
                    for member in zf.namelist():
                        if member.rsplit('/', 1)[-1] == name:
                            return zf.read(member)
            else:
                with tarfile.open(fileobj=io.BytesIO(archive), mode='r:gz') as tf:
                    for member in tf.getmembers():
                        if member.isfile() and member.name.rsplit('/', 1)[-1] == name:
                            extracted = tf.extractfile(member)
                            if extracted is not None:
                                return extracted.read()
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
            raise ProcessError(f"Corrupt sing-box archive: {e}") from e
        raise ProcessError(f"Archive does not contain {name}")

    def _place(self, binary: bytes, target: Path):
        tmp_path = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(target.parent))
            with os.fdopen(fd, 'wb') as f:
                f.write(binary)
            os.chmod(tmp_path, 0o755)
            os.replace(tmp_path, target)
            tmp_path = None
        except OSError as e:
            raise PersistenceError(f"Failed to install sing-box: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
