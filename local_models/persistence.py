"""Small JSON documents kept in the private state directory."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600


def ensure_private_dir(directory: Path) -> None:
    if not directory.exists():
        directory.mkdir(parents=True, exist_ok=True)
        os.chmod(directory, DIR_MODE)


def read_document(path: Path) -> Optional[Dict[str, Any]]:
    """Return the JSON object stored at ``path``.

    A missing file, an unreadable file, invalid JSON and a top-level value that
    is not an object all read as ``None``.
    """

    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable document %s: %s", path, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("Ignoring document %s: expected a JSON object", path)
        return None
    return payload


def write_document(path: Path, payload: Dict[str, Any]) -> bool:
    """Replace ``path`` atomically with ``payload`` readable only by the owner."""

    tmp_path: Optional[Path] = None
    try:
        ensure_private_dir(path.parent)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", delete=False, dir=str(path.parent), suffix=".tmp"
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            json.dump(payload, tmp_file, indent=2)
        os.chmod(tmp_path, FILE_MODE)
        tmp_path.replace(path)
    except (OSError, TypeError, ValueError) as exc:
        logger.warning("Failed to write %s: %s", path, exc)
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()
        return False
    return True


def remove_document(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("Failed to remove %s: %s", path, exc)
        return False
    return True
