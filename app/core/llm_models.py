"""Model registry: token limits and capability flags per model."""

from dataclasses import dataclass

from app.core.exceptions import UnknownModelError
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelCapabilities:
    supports_structured_output: bool
    supports_prompt_caching: bool
    supports_tools: bool
    supports_vision: bool


@dataclass(frozen=True)
class ModelConfig:
    model_id: str
    max_input_tokens: int
    max_output_tokens: int
    context_window: int
    default_temperature: float
    capabilities: ModelCapabilities


_STRUCTURED = ModelCapabilities(
    supports_structured_output=True,
    supports_prompt_caching=True,
    supports_tools=True,
    supports_vision=False,
)

MODEL_CONFIGS: dict[str, ModelConfig] = {
    "gpt-4o-mini": ModelConfig(
        model_id="gpt-4o-mini",
        max_input_tokens=120_000,
        max_output_tokens=16_384,
        context_window=128_000,
        default_temperature=0.7,
        capabilities=_STRUCTURED,
    ),
    "gpt-4o": ModelConfig(
        model_id="gpt-4o",
        max_input_tokens=120_000,
        max_output_tokens=16_384,
        context_window=128_000,
        default_temperature=0.7,
        capabilities=ModelCapabilities(True, True, True, True),
    ),
    "gpt-4o-2024-08-06": ModelConfig(
        model_id="gpt-4o-2024-08-06",
        max_input_tokens=120_000,
        max_output_tokens=16_384,
        context_window=128_000,
        default_temperature=0.7,
        capabilities=ModelCapabilities(True, True, True, True),
    ),
    "gpt-4-turbo": ModelConfig(
        model_id="gpt-4-turbo",
        max_input_tokens=120_000,
        max_output_tokens=4096,
        context_window=128_000,
        default_temperature=0.7,
        capabilities=ModelCapabilities(False, False, True, True),
    ),
    "gpt-3.5-turbo": ModelConfig(
        model_id="gpt-3.5-turbo",
        max_input_tokens=16_000,
        max_output_tokens=4096,
        context_window=16_385,
        default_temperature=0.7,
        capabilities=ModelCapabilities(False, False, True, False),
    ),
}


def get_model_config(model_id: str) -> ModelConfig:
    """
    Look up a model's limits and capabilities.

    Raises:
        UnknownModelError: If the model is not registered
    """
    config = MODEL_CONFIGS.get(model_id)
    if config is None:
        raise UnknownModelError(
            f"Unknown model: {model_id}. Supported: {', '.join(MODEL_CONFIGS)}"
        )
    return config


def model_supports(model_id: str, capability: str) -> bool:
    """Check a capability flag (e.g. "supports_tools") for a model."""
    return bool(getattr(get_model_config(model_id).capabilities, capability, False))


def resolve_model(model_id: str | None, default: str) -> str:
    """Return model_id if registered, else warn and fall back to default."""
    if model_id and model_id in MODEL_CONFIGS:
        return model_id
    if model_id:
        logger.warning(f"Unknown model '{model_id}', falling back to {default}")
    return default
