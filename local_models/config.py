from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

DEFAULT_STATE_DIR = Path.home() / ".local-models"
DEFAULT_PORT = 8321
DEFAULT_HUB_ENDPOINT = "https://huggingface.co"
DEFAULT_SERVER_MODULE = "vllm.entrypoints.openai.api_server"

# Import name -> distribution name.
REQUIRED_PACKAGES: Dict[str, str] = {
    "vllm": "vllm",
    "huggingface_hub": "huggingface_hub",
}


@dataclass(frozen=True)
class ManagerConfig:
    """Locations, ports and timeouts used by every local-model component."""

    state_dir: Path = DEFAULT_STATE_DIR
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    hub_endpoint: str = DEFAULT_HUB_ENDPOINT
    update_ttl: float = 4 * 60 * 60
    remote_timeout: float = 5.0
    health_timeout: float = 2.0
    import_timeout: float = 30.0
    resolve_timeout: float = 30.0
    version_timeout: float = 10.0
    ready_timeout: float = 120.0
    poll_interval: float = 2.0
    server_module: str = DEFAULT_SERVER_MODULE
    server_args: Tuple[str, ...] = ("--trust-remote-code",)
    interpreter_candidates: Tuple[str, ...] = ("python3", "python")
    required_packages: Mapping[str, str] = field(default_factory=lambda: dict(REQUIRED_PACKAGES))

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.port}"

    @property
    def models_file(self) -> Path:
        return self.state_dir / "models.json"

    @property
    def server_file(self) -> Path:
        return self.state_dir / "server.json"

    @property
    def update_cache_file(self) -> Path:
        return self.state_dir / "update-check.json"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "server.log"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ManagerConfig":
        """Build a configuration, honouring ``LOCAL_MODELS_HOME``, ``LOCAL_MODELS_PORT`` and ``HF_ENDPOINT``."""

        env = os.environ if environ is None else environ
        kwargs: Dict[str, object] = {}
        home = env.get("LOCAL_MODELS_HOME")
        if home:
            kwargs["state_dir"] = Path(home).expanduser()
        port = env.get("LOCAL_MODELS_PORT")
        if port:
            try:
                kwargs["port"] = int(port)
            except ValueError:
                pass
        endpoint = env.get("HF_ENDPOINT")
        if endpoint:
            kwargs["hub_endpoint"] = endpoint.rstrip("/")
        return cls(**kwargs)  # type: ignore[arg-type]
