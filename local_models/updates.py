"""Compare cached model revisions with the hub, remembering the answer for a while."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .catalog import AVAILABLE_MODELS, ModelDefinition, get_model_definition
from .config import ManagerConfig
from .hub import HubRegistry, RemoteRevision, local_revision
from .persistence import read_document, write_document
from .state import InstallationStateStore

logger = logging.getLogger(__name__)


class RevisionRegistry(Protocol):
    def latest_revision(self, hub_repository: str) -> RemoteRevision:
        ...


LocalRevisionLookup = Callable[[str, str], Optional[str]]


@dataclass(frozen=True)
class UpdateCacheEntry:
    model_id: str
    model_name: str
    hub_repository: str
    checked_at: float
    local_revision: Optional[str] = None
    remote_revision: Optional[str] = None
    has_update: bool = False
    error: Optional[str] = None

    def fresh(self, now: float, max_age: float, current_local_revision: Optional[str]) -> bool:
        """True while younger than ``max_age`` and still describing the same local snapshot."""

        return now - self.checked_at < max_age and self.local_revision == current_local_revision

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, model_id: str, document: Any) -> Optional["UpdateCacheEntry"]:
        if not isinstance(document, dict):
            return None
        checked_at = document.get("checked_at")
        if isinstance(checked_at, bool) or not isinstance(checked_at, (int, float)):
            return None

        def optional_str(key: str) -> Optional[str]:
            value = document.get(key)
            return value if isinstance(value, str) and value else None

        return cls(
            model_id=model_id,
            model_name=optional_str("model_name") or model_id,
            hub_repository=optional_str("hub_repository") or "",
            checked_at=float(checked_at),
            local_revision=optional_str("local_revision"),
            remote_revision=optional_str("remote_revision"),
            has_update=document.get("has_update") is True,
            error=optional_str("error"),
        )


class UpdateChecker:
    """Per-model update checks backed by ``update-check.json``."""

    def __init__(
        self,
        config: ManagerConfig,
        state: InstallationStateStore,
        catalog: Sequence[ModelDefinition] = AVAILABLE_MODELS,
        *,
        registry: Optional[RevisionRegistry] = None,
        local_revision_lookup: Optional[LocalRevisionLookup] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.state = state
        self.catalog = catalog
        self.registry = registry or HubRegistry(config.hub_endpoint, config.remote_timeout)
        self._local_revision = local_revision_lookup or self._scan_local_revision
        self._clock = clock
        self._write_lock = threading.Lock()

    def _scan_local_revision(self, interpreter: str, hub_repository: str) -> Optional[str]:
        return local_revision(interpreter, hub_repository, timeout=self.config.resolve_timeout)

    def load_cache(self) -> Dict[str, UpdateCacheEntry]:
        document = read_document(self.config.update_cache_file) or {}
        cache: Dict[str, UpdateCacheEntry] = {}
        for model_id, raw_entry in document.items():
            entry = UpdateCacheEntry.from_document(model_id, raw_entry)
            if entry is not None:
                cache[model_id] = entry
        return cache

    def cached_entry(self, model_id: str) -> Optional[UpdateCacheEntry]:
        return self.load_cache().get(model_id)

    def _store(self, entry: UpdateCacheEntry) -> None:
        with self._write_lock:
            document = read_document(self.config.update_cache_file) or {}
            document[entry.model_id] = entry.to_document()
            write_document(self.config.update_cache_file, document)

    def check_one(
        self, interpreter: str, model_id: str, max_age: Optional[float] = None
    ) -> Optional[UpdateCacheEntry]:
        model = get_model_definition(model_id, self.catalog)
        if model is None:
            return None
        if max_age is None:
            max_age = self.config.update_ttl

        current_local = self._local_revision(interpreter, model.hub_repository)
        cached = self.cached_entry(model_id)
        now = self._clock()
        if cached is not None and cached.fresh(now, max_age, current_local):
            logger.debug("Update check for %s answered from cache", model_id)
            return cached

        remote = self.registry.latest_revision(model.hub_repository)
        if remote.error is not None or remote.sha is None:
            logger.warning("Update check for %s failed: %s", model_id, remote.error)
            has_update, error = False, remote.error or "registry returned no revision"
        elif current_local is None:
            has_update, error = False, "model is not present in the local cache"
        else:
            has_update, error = current_local != remote.sha, None

        entry = UpdateCacheEntry(
            model_id=model.id,
            model_name=model.display_name,
            hub_repository=model.hub_repository,
            checked_at=now,
            local_revision=current_local,
            remote_revision=remote.sha,
            has_update=has_update,
            error=error,
        )
        self._store(entry)
        return entry

    def _check_or_degrade(self, interpreter: str, model_id: str) -> UpdateCacheEntry:
        try:
            entry = self.check_one(interpreter, model_id, max_age=0)
        except Exception as exc:  # one failing model must not drop the others
            logger.exception("Update check for %s raised", model_id)
            error = str(exc) or type(exc).__name__
        else:
            if entry is not None:
                return entry
            error = "model is not in the catalog"
        model = get_model_definition(model_id, self.catalog)
        return UpdateCacheEntry(
            model_id=model_id,
            model_name=model.display_name if model else model_id,
            hub_repository=model.hub_repository if model else "",
            checked_at=self._clock(),
            error=error,
        )

    def check_all(self, interpreter: str) -> List[UpdateCacheEntry]:
        """Check every installed model against the hub, bypassing the cache."""

        installed = self.state.list_installed()
        if not installed:
            return []
        with ThreadPoolExecutor(max_workers=len(installed)) as executor:
            return list(executor.map(lambda model_id: self._check_or_degrade(interpreter, model_id), installed))
