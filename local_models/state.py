from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .catalog import AVAILABLE_MODELS, ModelDefinition, get_model_definition
from .config import ManagerConfig
from .persistence import read_document, write_document

logger = logging.getLogger(__name__)


@dataclass
class InstallationState:
    """Which catalog models are installed and which one is active."""

    installed_ids: List[str] = field(default_factory=list)
    active_id: Optional[str] = None

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> "InstallationState":
        if document is None:
            return cls()
        installed: List[str] = []
        raw_installed = document.get("installed")
        if isinstance(raw_installed, list):
            for value in raw_installed:
                if isinstance(value, str) and value and value not in installed:
                    installed.append(value)
        active = document.get("active")
        if not isinstance(active, str) or not active:
            active = None
        return cls(installed_ids=installed, active_id=active)

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {"installed": list(self.installed_ids)}
        if self.active_id is not None:
            document["active"] = self.active_id
        return document

    @property
    def effective_active_id(self) -> Optional[str]:
        if not self.installed_ids:
            return None
        if self.active_id in self.installed_ids:
            return self.active_id
        return self.installed_ids[0]


class InstallationStateStore:
    """Read-modify-write access to ``models.json``.

    Every mutation reloads the whole document, applies the change and writes the
    whole document back. A missing or corrupt file means nothing is installed.
    """

    def __init__(self, config: ManagerConfig, catalog: Sequence[ModelDefinition] = AVAILABLE_MODELS) -> None:
        self.config = config
        self.catalog = catalog

    def load(self) -> InstallationState:
        return InstallationState.from_document(read_document(self.config.models_file))

    def _save(self, state: InstallationState) -> bool:
        return write_document(self.config.models_file, state.to_document())

    def list_installed(self) -> List[str]:
        return list(self.load().installed_ids)

    def is_installed(self, model_id: str) -> bool:
        return model_id in self.load().installed_ids

    def get_active(self) -> Optional[str]:
        return self.load().effective_active_id

    def mark_installed(self, model_id: str) -> bool:
        if get_model_definition(model_id, self.catalog) is None:
            logger.warning("Refusing to mark unknown model %r as installed", model_id)
            return False
        state = self.load()
        if model_id not in state.installed_ids:
            state.installed_ids.append(model_id)
        if state.active_id not in state.installed_ids:
            state.active_id = model_id
        logger.info("Marked %s as installed", model_id)
        return self._save(state)

    def mark_uninstalled(self, model_id: str) -> bool:
        state = self.load()
        state.installed_ids = [value for value in state.installed_ids if value != model_id]
        if state.active_id == model_id or state.active_id not in state.installed_ids:
            state.active_id = state.installed_ids[0] if state.installed_ids else None
        logger.info("Marked %s as uninstalled", model_id)
        return self._save(state)

    def set_active(self, model_id: str) -> bool:
        state = self.load()
        if model_id not in state.installed_ids:
            return False
        state.active_id = model_id
        return self._save(state)
