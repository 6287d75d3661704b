from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple


@dataclass(frozen=True)
class ModelDefinition:
    """An installable model hosted on the model hub."""

    id: str
    display_name: str
    hub_repository: str
    parameter_label: str
    # Path inside the snapshot holding config.json and the weights.
    subdirectory: Optional[str] = None
    recommended: bool = False

    @property
    def hub_url(self) -> str:
        return f"https://huggingface.co/{self.hub_repository}"


AVAILABLE_MODELS: Tuple[ModelDefinition, ...] = (
    ModelDefinition(
        id="dmind-3-nano",
        display_name="DMind-3-nano",
        hub_repository="DMindAI/DMind-3-nano",
        parameter_label="270M",
        subdirectory="model",
        recommended=True,
    ),
    ModelDefinition(
        id="dmind-3-mini",
        display_name="DMind-3-mini",
        hub_repository="DMindAI/DMind-3-mini",
        parameter_label="4B",
    ),
    ModelDefinition(
        id="dmind-3",
        display_name="DMind-3",
        hub_repository="DMindAI/DMind-3",
        parameter_label="21B",
    ),
)


def list_models(catalog: Sequence[ModelDefinition] = AVAILABLE_MODELS) -> list[ModelDefinition]:
    return list(catalog)


def get_model_definition(
    model_id: str, catalog: Iterable[ModelDefinition] = AVAILABLE_MODELS
) -> Optional[ModelDefinition]:
    for model in catalog:
        if model.id == model_id:
            return model
    return None


def recommended_model(candidates: Sequence[ModelDefinition]) -> Optional[ModelDefinition]:
    """Return the first recommended candidate, falling back to the first one."""

    for model in candidates:
        if model.recommended:
            return model
    return candidates[0] if candidates else None
