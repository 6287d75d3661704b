"""Reinstall native extensions built for the wrong architecture.

On Apple Silicon a wheel can pull in an x86_64 compiled extension, which only
shows up as an ``ImportError`` deep inside the import chain. The loop below
imports the target module, extracts the offending package from the error,
force-reinstalls it and tries again until the import succeeds or no further
progress is possible.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .prerequisites import install_package, is_apple_silicon

logger = logging.getLogger(__name__)

MAX_REPAIR_ATTEMPTS = 30

ARCH_MISMATCH_SIGNATURES = (
    "incompatible architecture",
    "x86_64",
    "has not been built correctly",
)

_SITE_PACKAGES_DIR = re.compile(r"site-packages/([^/]+)/")
_NOT_BUILT_DIR = re.compile(r"that ([\w-]+) has not been built")

# Import directory -> pip distribution, where the two differ.
MODULE_TO_PACKAGE = {
    "charset_normalizer": "charset-normalizer",
    "PIL": "pillow",
    "cv2": "opencv-python-headless",
    "yaml": "pyyaml",
    "zmq": "pyzmq",
    "_cffi_backend": "cffi",
    "grpc": "grpcio",
    "sklearn": "scikit-learn",
    "skimage": "scikit-image",
}


@dataclass
class RepairResult:
    module: str
    fixed: List[str] = field(default_factory=list)
    success: bool = False
    diagnostic: Optional[str] = None


def is_arch_mismatch(error_text: str) -> bool:
    return any(signature in error_text for signature in ARCH_MISMATCH_SIGNATURES)


def extract_package_dir(error_text: str) -> Optional[str]:
    match = _SITE_PACKAGES_DIR.search(error_text) or _NOT_BUILT_DIR.search(error_text)
    return match.group(1) if match else None


def package_name_for(module_dir: str) -> str:
    return MODULE_TO_PACKAGE.get(module_dir, module_dir.replace("_", "-"))


def _try_import(interpreter: str, module: str, timeout: float) -> Optional[str]:
    """Return ``None`` when the import succeeds, otherwise the error text."""

    try:
        completed = subprocess.run(
            [interpreter, "-c", f"import {module}"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return f"import {module} timed out after {timeout:g}s"
    except OSError as exc:
        return str(exc)
    if completed.returncode == 0:
        return None
    return completed.stderr or completed.stdout or f"import {module} exited with {completed.returncode}"


def repair_import(
    interpreter: str,
    module: str,
    *,
    max_attempts: int = MAX_REPAIR_ATTEMPTS,
    timeout: float = 30.0,
) -> RepairResult:
    result = RepairResult(module=module)
    seen: set[str] = set()

    for _ in range(max_attempts):
        error_text = _try_import(interpreter, module, timeout)
        if error_text is None:
            result.success = True
            result.diagnostic = None
            break

        result.diagnostic = error_text.strip().splitlines()[-1] if error_text.strip() else None
        if not is_arch_mismatch(error_text):
            logger.warning("import %s failed for a reason other than architecture mismatch", module)
            break

        module_dir = extract_package_dir(error_text)
        if module_dir is None or module_dir in seen:
            logger.warning("Cannot make further progress repairing import %s", module)
            break
        seen.add(module_dir)

        package = package_name_for(module_dir)
        logger.info("Reinstalling %s to repair import %s", package, module)
        if not install_package(interpreter, package, "--force-reinstall", "--no-cache-dir"):
            result.diagnostic = f"reinstalling {package} failed"
            break
        result.fixed.append(package)

    return result


def repair_native_dependencies(interpreter: str, modules: Iterable[str]) -> List[str]:
    """Repair every module on Apple Silicon; elsewhere this is a no-op."""

    if not is_apple_silicon():
        return []
    fixed: List[str] = []
    for module in modules:
        fixed.extend(repair_import(interpreter, module).fixed)
    return fixed
