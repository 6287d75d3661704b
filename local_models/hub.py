"""Snapshot downloads and cache maintenance through the hub client library.

The hub client runs inside the detected interpreter rather than this process,
because that is the environment the inference server will load the model from.
Repository ids are passed as ``argv`` entries, never interpolated into code.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from http.client import HTTPException
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from .catalog import ModelDefinition

logger = logging.getLogger(__name__)

DOWNLOAD_SCRIPT = """\
import sys
from huggingface_hub import snapshot_download
snapshot_download(sys.argv[1])
"""

RESOLVE_SCRIPT = """\
import os, sys
from huggingface_hub import snapshot_download
path = snapshot_download(sys.argv[1])
print(os.path.join(path, sys.argv[2]) if len(sys.argv) > 2 else path)
"""

LOCAL_REVISION_SCRIPT = """\
import sys
from huggingface_hub import scan_cache_dir
revisions = [
    revision
    for repo in scan_cache_dir().repos
    if repo.repo_id == sys.argv[1]
    for revision in repo.revisions
]
if revisions:
    print(max(revisions, key=lambda revision: revision.last_modified).commit_hash)
"""

CLEAR_CACHE_SCRIPT = """\
import sys
from huggingface_hub import scan_cache_dir
cache = scan_cache_dir()
hashes = [
    revision.commit_hash
    for repo in cache.repos
    if repo.repo_id == sys.argv[1]
    for revision in repo.revisions
]
if hashes:
    cache.delete_revisions(*hashes).execute()
"""


@dataclass(frozen=True)
class RemoteRevision:
    """Outcome of asking the hub for a repository's latest revision."""

    sha: Optional[str] = None
    error: Optional[str] = None


def _last_line(output: str) -> Optional[str]:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[-1] if lines else None


def download_model(interpreter: str, hub_repository: str) -> bool:
    """Download a full snapshot, streaming progress to the caller's terminal."""

    logger.info("Downloading snapshot of %s", hub_repository)
    try:
        completed = subprocess.run([interpreter, "-c", DOWNLOAD_SCRIPT, hub_repository])
    except OSError as exc:
        logger.warning("Could not start download of %s: %s", hub_repository, exc)
        return False
    return completed.returncode == 0


def resolve_model_path(
    interpreter: str, model: ModelDefinition, *, timeout: float = 30.0
) -> Optional[str]:
    """Return the local directory the server should load ``model`` from.

    ``snapshot_download`` is idempotent and answers from the cache when the
    snapshot is already present.
    """

    command = [interpreter, "-c", RESOLVE_SCRIPT, model.hub_repository]
    if model.subdirectory:
        command.append(model.subdirectory)
    try:
        completed = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Could not resolve path for %s: %s", model.id, exc)
        return None
    if completed.returncode != 0:
        logger.warning("Resolving %s exited with %s", model.id, completed.returncode)
        return None
    return _last_line(completed.stdout)


def local_revision(interpreter: str, hub_repository: str, *, timeout: float = 30.0) -> Optional[str]:
    """Return the most recently modified cached revision of ``hub_repository``."""

    try:
        completed = subprocess.run(
            [interpreter, "-c", LOCAL_REVISION_SCRIPT, hub_repository],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Cache scan for %s failed: %s", hub_repository, exc)
        return None
    if completed.returncode != 0:
        return None
    return _last_line(completed.stdout)


def clear_model_cache(interpreter: str, hub_repository: str, *, timeout: Optional[float] = None) -> bool:
    try:
        completed = subprocess.run(
            [interpreter, "-c", CLEAR_CACHE_SCRIPT, hub_repository],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Clearing cache for %s failed: %s", hub_repository, exc)
        return False
    if completed.returncode != 0:
        logger.warning("Clearing cache for %s exited with %s", hub_repository, completed.returncode)
        return False
    logger.info("Cleared cached revisions of %s", hub_repository)
    return True


def fetch_remote_revision(
    hub_repository: str,
    *,
    endpoint: str = "https://huggingface.co",
    timeout: float = 5.0,
) -> RemoteRevision:
    """Ask the hub API for the latest revision hash of ``hub_repository``."""

    url = f"{endpoint.rstrip('/')}/api/models/{quote(hub_repository, safe='/')}"
    request = Request(url, headers={"Accept": "application/json"})
    try:
        with urlopen(request, timeout=timeout) as response:  # nosec: B310 - configured hub endpoint
            status = getattr(response, "status", response.getcode())
            if status != 200:
                return RemoteRevision(error=f"registry returned HTTP {status}")
            payload = json.loads(response.read().decode("utf-8"))
    except HTTPError as exc:
        return RemoteRevision(error=f"registry returned HTTP {exc.code}")
    except (URLError, HTTPException, OSError) as exc:
        return RemoteRevision(error=f"registry unreachable: {getattr(exc, 'reason', exc)}")
    except ValueError:
        return RemoteRevision(error="registry response was not valid JSON")

    sha = payload.get("sha") if isinstance(payload, dict) else None
    if not isinstance(sha, str) or not sha:
        return RemoteRevision(error="registry response did not include a revision")
    return RemoteRevision(sha=sha)


class HubRegistry:
    """Remote revision lookups against a configured hub endpoint."""

    def __init__(self, endpoint: str = "https://huggingface.co", timeout: float = 5.0) -> None:
        self.endpoint = endpoint
        self.timeout = timeout

    def latest_revision(self, hub_repository: str) -> RemoteRevision:
        return fetch_remote_revision(hub_repository, endpoint=self.endpoint, timeout=self.timeout)
