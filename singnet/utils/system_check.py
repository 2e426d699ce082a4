"""
System Check module: platform detection and engine binary discovery
"""

import platform
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

ENGINE_NAME = 'sing-box'

# Well-known install locations, probed after PATH
WELL_KNOWN_PATHS = {
    'linux': [
        '/usr/local/bin/sing-box',
        '/usr/bin/sing-box',
        '/opt/sing-box/sing-box',
    ],
    'darwin': [
        '/opt/homebrew/bin/sing-box',
        '/usr/local/bin/sing-box',
    ],
    'windows': [
        r'C:\Program Files\sing-box\sing-box.exe',
    ],
}

ARCH_ALIASES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
    'armv7l': 'armv7',
    'i386': '386',
    'i686': '386',
}


def is_windows() -> bool:
    """Check if running on Windows"""
    return platform.system().lower() == 'windows'


def engine_binary_name() -> str:
    return f'{ENGINE_NAME}.exe' if is_windows() else ENGINE_NAME


def engine_platform() -> Tuple[str, str]:
    """
    Release naming for the current platform

    Returns:
        Tuple of (os, arch), e.g. ('linux', 'amd64')
    """
    system = platform.system().lower()
    machine = platform.machine().lower()
    arch = ARCH_ALIASES.get(machine)
    if arch is None:
        raise RuntimeError(f"Unsupported architecture: {machine}")
    return system, arch


def is_executable(path: Optional[Path]) -> bool:
    if not path:
        return False
    path = Path(path)
    return path.is_file() and os.access(path, os.X_OK)


def candidate_engine_paths(install_dir: Optional[Path] = None) -> List[Path]:
    """Locations probed for the engine binary, in priority order"""
    candidates = []

    found = shutil.which(ENGINE_NAME)
    if found:
        candidates.append(Path(found))

    if install_dir is not None:
        candidates.append(Path(install_dir) / engine_binary_name())

    system = platform.system().lower()
    candidates.extend(Path(p) for p in WELL_KNOWN_PATHS.get(system, []))
    return candidates


def find_engine_binary(override: Optional[str] = None,
                       install_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Locate the engine binary

    Args:
        override: Explicit path from settings, probed first
        install_dir: Directory where install() places the binary
    """
    if override:
        path = Path(override).expanduser()
        if is_executable(path):
            return path
        logger.warning(f"Configured engine path is not executable: {path}")

    for path in candidate_engine_paths(install_dir):
        if is_executable(path):
            return path
    return None


def get_engine_version(binary: Path) -> Optional[str]:
    """Ask the binary for its version ('sing-box version 1.10.7')"""
    try:
        result = subprocess.run(
            [str(binary), 'version'],
            capture_output=True,
            text=True,
            timeout=5,
            **hidden_window_kwargs()
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Failed to get engine version: {e}")
        return None

    first_line = result.stdout.strip().split('\n')[0] if result.stdout else ''
    parts = first_line.split()
    return parts[-1] if parts else None


def hidden_window_kwargs() -> Dict:
    """Popen arguments that keep a console window from appearing on Windows"""
    if not is_windows():
        return {}
    startupinfo = subprocess.STARTUPINFO()
    startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
    return {
        'startupinfo': startupinfo,
        'creationflags': subprocess.CREATE_NO_WINDOW,
    }
