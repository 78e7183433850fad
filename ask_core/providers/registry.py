"""Provider 与模型配置。

每个厂商一条 ProviderConfig：默认 base_url、聊天端点、API key 对应的环境变量名，
以及可选模型列表。新增厂商时在这里加一条配置即可。"""

from dataclasses import dataclass, field
from typing import List, Mapping


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    label: str
    base_url: str
    endpoint: str
    api_key_env: str
    models: List[str] = field(default_factory=list)

    @property
    def default_model(self) -> str:
        return self.models[0]


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    label="OpenAI",
    base_url="https://api.openai.com/v1",
    endpoint="/chat/completions",
    api_key_env="OPENAI_API_KEY",
    models=[
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-3.5-turbo",
    ],
)

ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    label="Anthropic",
    base_url="https://api.anthropic.com/v1",
    endpoint="/messages",
    api_key_env="ANTHROPIC_API_KEY",
    models=[
        "claude-sonnet-4-20250514",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
    ],
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "anthropic": ANTHROPIC_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
