"""Install, update and supervise a locally hosted language-model server."""

from .catalog import AVAILABLE_MODELS, ModelDefinition, get_model_definition, list_models, recommended_model
from .config import ManagerConfig
from .hub import clear_model_cache, download_model, fetch_remote_revision, local_revision, resolve_model_path
from .manager import LoadResult, LocalModelManager, PrerequisiteReport, ServerStatusReport
from .prerequisites import architecture_label, find_interpreter, has_package, install_package, is_apple_silicon
from .repair import repair_import, repair_native_dependencies
from .server import ChatError, ServerRecord, ServerStatus, ServerSupervisor, drain_output, stream_chat_completion
from .state import InstallationState, InstallationStateStore
from .updates import UpdateCacheEntry, UpdateChecker

__all__ = [
    "AVAILABLE_MODELS",
    "ChatError",
    "InstallationState",
    "InstallationStateStore",
    "LoadResult",
    "LocalModelManager",
    "ManagerConfig",
    "ModelDefinition",
    "PrerequisiteReport",
    "ServerRecord",
    "ServerStatus",
    "ServerStatusReport",
    "ServerSupervisor",
    "UpdateCacheEntry",
    "UpdateChecker",
    "architecture_label",
    "clear_model_cache",
    "download_model",
    "drain_output",
    "fetch_remote_revision",
    "find_interpreter",
    "get_model_definition",
    "has_package",
    "install_package",
    "is_apple_silicon",
    "list_models",
    "local_revision",
    "recommended_model",
    "repair_import",
    "repair_native_dependencies",
    "resolve_model_path",
    "stream_chat_completion",
]
