"""
Atomic file persistence helpers
"""

import json
import os
import tempfile
import logging
from pathlib import Path
from typing import Any

import yaml

from ..core.errors import PersistenceError

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str, mode: int = 0o600):
    """
    Write text to path so that readers see either the old or the new file

    The content goes to a temporary file in the same directory, is flushed
    to disk and then renamed over the target.

    Raises:
        PersistenceError: if any step fails
    """
    path = Path(path)
    tmp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent)
        )
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as e:
        logger.error(f"Failed to write {path}: {e}")
        raise PersistenceError(f"Failed to write {path.name}: {e}") from e
    finally:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                logger.debug(f"Could not remove temp file {tmp_path}")


def write_json(path: Path, data: Any):
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


def write_yaml(path: Path, data: Any):
    atomic_write_text(
        path, yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    )


def read_json(path: Path, default: Any = None) -> Any:
    """Load JSON file, returning default when missing or unreadable"""
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to load {path}: {e}")
        return default


def read_yaml(path: Path, default: Any = None) -> Any:
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load {path}: {e}")
        return default
    return default if data is None else data
