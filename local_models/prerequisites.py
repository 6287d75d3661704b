"""Detect a Python interpreter and the packages the local server needs."""

from __future__ import annotations

import logging
import platform
import re
import subprocess
from typing import List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

_PYTHON3_VERSION = re.compile(r"Python 3\.")


def is_apple_silicon() -> bool:
    return platform.system() == "Darwin" and platform.machine() == "arm64"


def architecture_label() -> str:
    system = platform.system()
    machine = platform.machine()
    if system == "Darwin":
        return "Apple Silicon (arm64)" if machine == "arm64" else f"macOS ({machine})"
    if system == "Linux":
        return f"Linux ({machine})"
    return f"{system} ({machine})"


def find_interpreter(
    candidates: Sequence[str] = ("python3", "python"), *, timeout: float = 10.0
) -> Optional[str]:
    """Return the first candidate whose ``--version`` reports Python 3."""

    for candidate in candidates:
        try:
            completed = subprocess.run(
                [candidate, "--version"],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("Interpreter candidate %s unavailable: %s", candidate, exc)
            continue
        # Python 2 printed its version on stderr.
        version = (completed.stdout or completed.stderr or "").strip()
        if completed.returncode == 0 and _PYTHON3_VERSION.match(version):
            logger.debug("Using interpreter %s (%s)", candidate, version)
            return candidate
    return None


def has_package(interpreter: str, module_name: str, *, timeout: float = 30.0) -> bool:
    try:
        completed = subprocess.run(
            [interpreter, "-c", f"import {module_name}"],
            capture_output=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Import check for %s failed: %s", module_name, exc)
        return False
    return completed.returncode == 0


def install_package(interpreter: str, package_name: str, *extra_args: str) -> bool:
    """Run ``pip install`` with the caller's terminal attached so progress is visible."""

    command = [interpreter, "-m", "pip", "install", *extra_args, package_name]
    logger.info("Installing %s", package_name)
    try:
        completed = subprocess.run(command)
    except OSError as exc:
        logger.warning("Could not run pip for %s: %s", package_name, exc)
        return False
    return completed.returncode == 0


def missing_packages(
    interpreter: str, required: Mapping[str, str], *, timeout: float = 30.0
) -> List[str]:
    """Return the distribution names of required packages that fail to import."""

    return [
        distribution
        for module_name, distribution in required.items()
        if not has_package(interpreter, module_name, timeout=timeout)
    ]
