"""Provider and model registry.

The conversation engine only ever asks for the logical model "chat"; which vendor
model answers it is decided here. Each provider speaks the chat/completions
protocol, so a provider is fully described by its base URL and model table.

Credentials and base URL overrides live on Settings as ``<name>_api_key`` and
``<name>_base_url``.
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping


CHAT_MODEL = "chat"


@dataclass(frozen=True)
class ModelConfig:
    logical_name: str
    provider_model: str
    max_tokens: int = 8192
    default_temperature: float = 0.7


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    models: Dict[str, ModelConfig] = field(default_factory=dict)

    @property
    def api_key_field(self) -> str:
        return f"{self.name}_api_key"

    @property
    def base_url_field(self) -> str:
        return f"{self.name}_base_url"


def _chat_provider(name: str, base_url: str, provider_model: str) -> ProviderConfig:
    return ProviderConfig(
        name=name,
        base_url=base_url,
        models={CHAT_MODEL: ModelConfig(logical_name=CHAT_MODEL, provider_model=provider_model)},
    )


KIMI_CONFIG = _chat_provider("kimi", "https://api.moonshot.cn/v1", "kimi-k2-turbo-preview")
GLM_CONFIG = _chat_provider("glm", "https://open.bigmodel.cn/api/paas/v4", "glm-4.6")

PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {cfg.name: cfg for cfg in (KIMI_CONFIG, GLM_CONFIG)}


def get_provider_config(name: str) -> ProviderConfig:
    """Look up a provider by name, case-insensitively."""
    try:
        return PROVIDER_REGISTRY[name.lower()]
    except KeyError:
        raise KeyError(f"Unknown provider: {name!r}") from None
