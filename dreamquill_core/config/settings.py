"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("DREAMQUILL_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
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


class PydanticSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- HTTP ----
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    connect_timeout: float = Field(default=10.0, gt=0, description="建立连接超时时间（秒）")

    # ---- 厂商协议常量 ----
    anthropic_version: str = Field(default="2023-06-01", description="Claude API 版本头")
    claude_max_tokens: int = Field(default=1024, ge=1, description="Claude 请求的 max_tokens")

    # ---- 存储 ----
    store_backend: Literal["json", "sqlite"] = Field(default="json", description="会话存储后端")
    storage_root: str = Field(default=".storage", description="JSON 存储根目录")
    database_path: str = Field(default="dreamquill.db", description="SQLite 数据库文件")
    store_max_retries: int = Field(default=5, ge=0, le=20, description="存储繁忙时的最大重试次数")
    store_retry_base_delay: float = Field(
        default=0.2,
        ge=0.0,
        description="重试退避单位（秒），第 n 次重试等待 n * 单位",
    )
    store_busy_timeout: float = Field(default=5.0, ge=0.0, description="SQLite busy timeout（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 密钥 ----
    secret_env_prefix: str = Field(
        default="DREAMQUILL_SECRET_",
        description="EnvSecretStore 使用的环境变量前缀",
    )

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


settings = PydanticSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = type(settings)
