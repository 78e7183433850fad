"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供各厂商的具体实现 (openai_client、anthropic_client)。

新增厂商 = 新增一个 Client 实现 + 在 _PROVIDER_CLASSES 里加一条映射。
"""

from typing import Dict, List, Optional

from ask_core.config.settings import settings
from ask_core.domain.exceptions import ValidationError
from ask_core.providers.anthropic_client import AnthropicClient
from ask_core.providers.base import ProviderClient
from ask_core.providers.openai_client import OpenAIClient
from ask_core.providers.registry import PROVIDER_REGISTRY, get_provider_config

_PROVIDER_CLASSES = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
}


def _missing_key_message(name: str) -> str:
    cfg = get_provider_config(name)
    return (
        f"{cfg.label} API key not found.\n\n"
        f"Set {cfg.api_key_env} environment variable or add it to the config file:\n\n"
        f"  providers:\n"
        f"    {cfg.name}:\n"
        f"      api_key: your-key-here"
    )


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "openai")).lower()
    cls = _PROVIDER_CLASSES.get(provider_name)
    if cls is None:
        raise ValidationError(
            code="UNKNOWN_PROVIDER",
            message=f"unknown provider: {provider_name}\n\nAvailable providers: {', '.join(_PROVIDER_CLASSES)}",
        )
    api_key = cfg.get_api_key(provider_name)
    if not api_key:
        raise ValidationError(code="MISSING_API_KEY", message=_missing_key_message(provider_name), provider=provider_name)
    return cls(
        api_key,
        base_url=cfg.get_base_url(provider_name),
        timeout=getattr(cfg, "http_timeout", 30.0),
    )


def list_models() -> Dict[str, List[str]]:
    """列出所有已注册 Provider 的可用模型。"""

    return {name: list(pc.models) for name, pc in PROVIDER_REGISTRY.items()}
