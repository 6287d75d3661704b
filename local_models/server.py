"""Supervise the local OpenAI-compatible inference server.

There is a single server slot on a fixed port. A detached server is tracked
through ``server.json``; the record is only a hint, and the health endpoint is
the authority on whether anything is actually serving.
"""

from __future__ import annotations

import atexit
import enum
import json
import logging
import os
import platform
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from http.client import HTTPException
from typing import IO, Any, Callable, Deque, Dict, Iterator, List, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .config import ManagerConfig
from .persistence import FILE_MODE, ensure_private_dir, read_document, remove_document, write_document

logger = logging.getLogger(__name__)


class ServerStatus(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class ChatError(RuntimeError):
    """The local server rejected a chat completion request."""


@dataclass(frozen=True)
class ServerRecord:
    process_id: int
    model_id: str
    # Value passed as --model; a hub repository id or a local snapshot path.
    resolved_model_path: str
    started_at: str

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> Optional["ServerRecord"]:
        if document is None:
            return None
        process_id = document.get("process_id")
        model_id = document.get("model_id")
        model_path = document.get("resolved_model_path")
        started_at = document.get("started_at")
        if isinstance(process_id, bool) or not isinstance(process_id, int) or process_id <= 0:
            return None
        if not all(isinstance(value, str) and value for value in (model_id, model_path, started_at)):
            return None
        return cls(
            process_id=process_id,
            model_id=model_id,
            resolved_model_path=model_path,
            started_at=started_at,
        )


def process_alive(pid: int) -> bool:
    """Whether ``pid`` names a live process; assumed alive where that cannot be checked."""

    if platform.system() == "Windows":
        # os.kill terminates the target on Windows.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _terminate_if_running(process: subprocess.Popen) -> None:
    if process.poll() is None:
        process.terminate()


def drain_output(process: subprocess.Popen, limit: int = 50) -> Deque[str]:
    """Keep reading an attached server's pipes so it never blocks on a full buffer.

    Returns a deque holding the last ``limit`` lines, for diagnostics.
    """

    tail: Deque[str] = deque(maxlen=limit)

    def pump(stream: Optional[IO[str]]) -> None:
        if stream is None:
            return
        for line in stream:
            tail.append(line.rstrip("\n"))

    for stream in (process.stdout, process.stderr):
        threading.Thread(target=pump, args=(stream,), daemon=True).start()
    return tail


class ServerSupervisor:
    def __init__(
        self,
        config: ManagerConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._sleep = sleep
        self._clock = clock

    @property
    def health_url(self) -> str:
        return f"{self.config.base_url}/v1/models"

    def server_command(self, interpreter: str, model_path: str) -> List[str]:
        return [
            interpreter,
            "-m",
            self.config.server_module,
            "--model",
            model_path,
            "--port",
            str(self.config.port),
            "--host",
            self.config.host,
            *self.config.server_args,
        ]

    def server_record(self) -> Optional[ServerRecord]:
        return ServerRecord.from_document(read_document(self.config.server_file))

    def is_running(self) -> bool:
        try:
            with urlopen(self.health_url, timeout=self.config.health_timeout) as response:  # nosec: B310 - localhost
                status = getattr(response, "status", response.getcode())
        except (HTTPError, URLError, HTTPException, OSError, ValueError):
            return False
        return status == 200

    def status(self) -> ServerStatus:
        if self.is_running():
            return ServerStatus.RUNNING
        record = self.server_record()
        if record is not None and process_alive(record.process_id):
            return ServerStatus.STARTING
        return ServerStatus.STOPPED

    def start_attached(self, interpreter: str, model_path: str) -> Optional[subprocess.Popen]:
        """Start a server owned by this process for a single session.

        Output is piped back to the caller for diagnostics. No record is
        written, and the child is terminated when this interpreter exits. Returns
        ``None`` when the process cannot be spawned.
        """

        command = self.server_command(interpreter, model_path)
        logger.info("Starting attached server for %s", model_path)
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            logger.warning("Could not start attached server: %s", exc)
            return None
        atexit.register(_terminate_if_running, process)
        return process

    def start_detached(self, interpreter: str, model_id: str, model_path: str) -> Optional[int]:
        """Start a server that outlives this process, logging to ``server.log``."""

        command = self.server_command(interpreter, model_path)
        kwargs: Dict[str, Any] = {}
        if platform.system() == "Windows":
            kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            ensure_private_dir(self.config.state_dir)
            log_fd = os.open(self.config.log_file, os.O_WRONLY | os.O_CREAT | os.O_APPEND, FILE_MODE)
            os.chmod(self.config.log_file, FILE_MODE)
            with os.fdopen(log_fd, "ab") as log_handle:
                process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    **kwargs,
                )
        except OSError as exc:
            logger.warning("Could not start detached server: %s", exc)
            return None

        if not process.pid:
            return None
        record = ServerRecord(
            process_id=process.pid,
            model_id=model_id,
            resolved_model_path=model_path,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        write_document(self.config.server_file, record.to_document())
        logger.info("Started detached server pid=%s for %s", process.pid, model_id)
        return process.pid

    def wait_ready(
        self,
        timeout: Optional[float] = None,
        *,
        process: Optional[subprocess.Popen] = None,
    ) -> bool:
        """Poll the health endpoint until it answers or ``timeout`` seconds pass.

        When ``process`` is given, give up as soon as that child has exited.
        """

        if timeout is None:
            timeout = self.config.ready_timeout
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            if self.is_running():
                return True
            if process is not None and process.poll() is not None:
                logger.warning("Server exited with %s before becoming ready", process.returncode)
                return False
            self._sleep(self.config.poll_interval)
        return False

    def stop(self) -> bool:
        """Signal the recorded server and forget it.

        Returns whether a termination signal was delivered. The record is removed
        even when the process is already gone.
        """

        record = self.server_record()
        delivered = False
        if record is not None:
            try:
                os.kill(record.process_id, signal.SIGTERM)
                delivered = True
                logger.info("Sent SIGTERM to server pid=%s", record.process_id)
            except ProcessLookupError:
                logger.info("Recorded server pid=%s is already gone", record.process_id)
            except OSError as exc:
                logger.warning("Could not signal server pid=%s: %s", record.process_id, exc)
        remove_document(self.config.server_file)
        return delivered


def stream_chat_completion(
    config: ManagerConfig,
    model_name: str,
    messages: Sequence[Dict[str, str]],
    *,
    max_tokens: int = 2048,
    timeout: Optional[float] = None,
) -> Iterator[str]:
    """Yield content deltas from a streamed chat completion.

    ``model_name`` must be the value the server was started with.
    """

    body = json.dumps(
        {"model": model_name, "messages": list(messages), "stream": True, "max_tokens": max_tokens}
    ).encode("utf-8")
    request = Request(
        f"{config.base_url}/v1/chat/completions",
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        response = urlopen(request, timeout=timeout)  # nosec: B310 - localhost
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise ChatError(f"Local model error {exc.code}: {detail}") from exc
    except URLError as exc:
        raise ChatError(f"Local model unreachable: {exc.reason}") from exc

    with response:
        for raw_line in response:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if data == "[DONE]":
                break
            try:
                content = json.loads(data)["choices"][0]["delta"].get("content")
            except (ValueError, KeyError, IndexError, TypeError, AttributeError):
                continue
            if content:
                yield content
