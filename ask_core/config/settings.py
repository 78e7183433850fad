"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级：
构造参数 > 环境变量 > .env > config.yaml > 默认值。

config.yaml 示例::

    default_provider: anthropic
    default_model: claude-sonnet-4-20250514
    providers:
      openai:
        api_key: ${OPENAI_API_KEY}
      anthropic:
        api_key: sk-ant-...
"""

import os
import re
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from platformdirs import user_config_dir
from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_NAME = "ask"

_ENV_REF = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


def _config_file_candidates() -> list[Path]:
    candidates = []
    explicit = os.getenv("ASK_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(user_config_dir(APP_NAME)) / "config.yaml",
    ])
    return candidates


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    seen: set[Path] = set()
    for path in _config_file_candidates():
        if path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class ProviderCredentials(BaseModel):
    """config.yaml 中 providers.<name> 一节。"""

    api_key: Optional[str] = None

    @field_validator("api_key")
    @classmethod
    def expand_env_reference(cls, v: Optional[str]) -> Optional[str]:
        # "${VAR}" 形式引用环境变量；变量未设置时保留原值
        if v:
            m = _ENV_REF.match(v.strip())
            if m and os.getenv(m.group(1)):
                return os.environ[m.group(1)]
        return v


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        validation_alias=AliasChoices("ask_provider", "default_provider"),
        description="默认使用的 Provider 名称，例如 openai、anthropic",
    )
    default_model: str = Field(
        default="gpt-4o",
        validation_alias=AliasChoices("ask_model", "default_model"),
        description="默认模型 ID",
    )

    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1",
        description="Anthropic API 基础URL",
    )
    providers: Dict[str, ProviderCredentials] = Field(
        default_factory=dict,
        description="config.yaml 中按 provider 配置的凭据",
    )

    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="默认采样温度")
    max_tokens: int = Field(default=0, ge=0, description="最大输出 token，0 表示使用 provider 默认值")
    channel_buffer: int = Field(default=100, ge=1, description="token 通道容量")

    # ---- 存储与日志 ----
    data_dir: str = Field(
        default_factory=lambda: user_config_dir(APP_NAME),
        description="数据目录（历史数据库等）",
    )
    history_db: Optional[str] = Field(default=None, description="SQLite 历史库路径，默认 <data_dir>/history.db")
    history_limit: int = Field(default=20, ge=1, description="历史列表默认条数")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    def get_api_key(self, provider: str) -> str:
        """返回 provider 的 API key：环境变量优先，其次 config.yaml。"""

        name = provider.lower()
        explicit = getattr(self, f"{name}_api_key", None)
        if explicit:
            return explicit
        creds = self.providers.get(name)
        if creds and creds.api_key:
            return creds.api_key
        return ""

    def get_base_url(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider.lower()}_base_url", None)

    def history_path(self) -> Path:
        """历史库文件路径，必要时创建所在目录。"""

        path = Path(self.history_db) if self.history_db else Path(self.data_dir) / "history.db"
        path = path.expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


settings = Settings()
