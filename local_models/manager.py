"""One entry point wiring every local-model component from a single config."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from . import hub, prerequisites, repair
from .catalog import AVAILABLE_MODELS, ModelDefinition, get_model_definition
from .config import ManagerConfig
from .server import ServerRecord, ServerStatus, ServerSupervisor
from .state import InstallationStateStore
from .updates import UpdateCacheEntry, UpdateChecker

logger = logging.getLogger(__name__)


@dataclass
class PrerequisiteReport:
    interpreter: Optional[str]
    missing: List[str] = field(default_factory=list)
    repaired: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.interpreter is not None and not self.missing


@dataclass
class LoadResult:
    ok: bool
    model_id: Optional[str] = None
    model_path: Optional[str] = None
    process_id: Optional[int] = None
    error: Optional[str] = None
    update: Optional[UpdateCacheEntry] = None


@dataclass
class ServerStatusReport:
    status: ServerStatus
    record: Optional[ServerRecord]
    model: Optional[ModelDefinition]
    port: int
    log_file: Path


class LocalModelManager:
    def __init__(
        self,
        config: Optional[ManagerConfig] = None,
        catalog: Sequence[ModelDefinition] = AVAILABLE_MODELS,
        *,
        state: Optional[InstallationStateStore] = None,
        supervisor: Optional[ServerSupervisor] = None,
        updates: Optional[UpdateChecker] = None,
    ) -> None:
        self.config = config or ManagerConfig.from_env()
        self.catalog = catalog
        self.state = state or InstallationStateStore(self.config, catalog)
        self.supervisor = supervisor or ServerSupervisor(self.config)
        self.updates = updates or UpdateChecker(self.config, self.state, catalog)
        self._interpreter: Optional[str] = None

    def model(self, model_id: str) -> Optional[ModelDefinition]:
        return get_model_definition(model_id, self.catalog)

    def interpreter(self) -> Optional[str]:
        if self._interpreter is None:
            self._interpreter = prerequisites.find_interpreter(
                self.config.interpreter_candidates, timeout=self.config.version_timeout
            )
        return self._interpreter

    def ensure_prerequisites(self, *, install_missing: bool = False) -> PrerequisiteReport:
        """Check interpreter and packages, optionally installing and repairing them."""

        interpreter = self.interpreter()
        if interpreter is None:
            return PrerequisiteReport(interpreter=None)

        required = self.config.required_packages
        timeout = self.config.import_timeout
        missing = prerequisites.missing_packages(interpreter, required, timeout=timeout)
        if install_missing:
            for package in missing:
                prerequisites.install_package(interpreter, package)
        repaired = repair.repair_native_dependencies(interpreter, required.keys())
        if install_missing or repaired:
            missing = prerequisites.missing_packages(interpreter, required, timeout=timeout)
        return PrerequisiteReport(interpreter=interpreter, missing=missing, repaired=repaired)

    def install(self, model_id: str) -> bool:
        model = self.model(model_id)
        interpreter = self.interpreter()
        if model is None or interpreter is None:
            return False
        if not hub.download_model(interpreter, model.hub_repository):
            return False
        return self.state.mark_installed(model.id)

    def uninstall(self, model_id: str) -> bool:
        if not self.state.is_installed(model_id):
            return False
        model = self.model(model_id)
        interpreter = self.interpreter()
        if model is not None and interpreter is not None:
            hub.clear_model_cache(interpreter, model.hub_repository)
        return self.state.mark_uninstalled(model_id)

    def update(self, model_id: str) -> bool:
        """Drop every cached revision of an installed model and download it again."""

        model = self.model(model_id)
        interpreter = self.interpreter()
        if model is None or interpreter is None or not self.state.is_installed(model_id):
            return False
        hub.clear_model_cache(interpreter, model.hub_repository)
        return hub.download_model(interpreter, model.hub_repository)

    def resolve_path(self, model_id: str) -> Optional[str]:
        model = self.model(model_id)
        interpreter = self.interpreter()
        if model is None or interpreter is None:
            return None
        return hub.resolve_model_path(interpreter, model, timeout=self.config.resolve_timeout)

    def check_update(self, model_id: str) -> Optional[UpdateCacheEntry]:
        interpreter = self.interpreter()
        if interpreter is None:
            return None
        return self.updates.check_one(interpreter, model_id)

    def check_updates(self) -> List[UpdateCacheEntry]:
        interpreter = self.interpreter()
        if interpreter is None:
            return []
        return self.updates.check_all(interpreter)

    def load(self, model_id: Optional[str] = None, *, wait: bool = True) -> LoadResult:
        """Start a detached server for ``model_id`` (default: the active model)."""

        installed = self.state.list_installed()
        if not installed:
            return LoadResult(ok=False, error="no models installed")
        if self.supervisor.is_running():
            return LoadResult(ok=False, error="a model server is already running")

        model_id = model_id or self.state.get_active() or installed[0]
        model = self.model(model_id)
        if model is None or model_id not in installed:
            return LoadResult(ok=False, model_id=model_id, error="model is not installed")
        self.state.set_active(model_id)

        interpreter = self.interpreter()
        if interpreter is None:
            return LoadResult(ok=False, model_id=model_id, error="no Python 3 interpreter found")
        update = self.updates.check_one(interpreter, model_id)
        model_path = hub.resolve_model_path(interpreter, model, timeout=self.config.resolve_timeout)
        if model_path is None:
            return LoadResult(
                ok=False, model_id=model_id, error="could not resolve model path from the hub cache", update=update
            )

        process_id = self.supervisor.start_detached(interpreter, model_id, model_path)
        if process_id is None:
            return LoadResult(
                ok=False, model_id=model_id, model_path=model_path, error="server process did not start", update=update
            )
        if wait and not self.supervisor.wait_ready():
            return LoadResult(
                ok=False,
                model_id=model_id,
                model_path=model_path,
                process_id=process_id,
                error=f"server did not become ready; see {self.config.log_file}",
                update=update,
            )
        return LoadResult(ok=True, model_id=model_id, model_path=model_path, process_id=process_id, update=update)

    def unload(self) -> bool:
        """Stop the recorded server; ``False`` when no managed server was signalled."""

        return self.supervisor.stop()

    def model_in_use(self) -> Optional[ModelDefinition]:
        """The model the recorded server runs, otherwise the active model."""

        record = self.supervisor.server_record()
        if record is not None:
            model = self.model(record.model_id)
            if model is not None:
                return model
        active = self.state.get_active()
        return self.model(active) if active else None

    def status(self) -> ServerStatusReport:
        record = self.supervisor.server_record()
        return ServerStatusReport(
            status=self.supervisor.status(),
            record=record,
            model=self.model(record.model_id) if record else None,
            port=self.config.port,
            log_file=self.config.log_file,
        )
