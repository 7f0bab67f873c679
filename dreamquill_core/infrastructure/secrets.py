"""凭据安全存储。

VendorProfile 的凭据可以不落在会话存储里，而是只保存一个 secret_alias，
真正的 API Key 在发起交换前才从 SecretStore 解析。
"""

import os
import re
from typing import Dict, Optional, Protocol

from dreamquill_core.config.settings import settings
from dreamquill_core.domain.exceptions import ValidationError
from dreamquill_core.domain.models import VendorProfile

SECRET_PREFIX = "provider"


def provider_secret_alias(profile_id: int) -> str:
    return f"{SECRET_PREFIX}:{profile_id}"


class SecretStore(Protocol):
    def get_secret(self, alias: str) -> Optional[str]:
        ...

    def set_secret(self, alias: str, value: str) -> None:
        ...

    def delete_secret(self, alias: str) -> None:
        ...


class MemorySecretStore:
    """进程内密钥存储，适合测试与临时配置。"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_secret(self, alias: str) -> Optional[str]:
        return self._items.get(alias)

    def set_secret(self, alias: str, value: str) -> None:
        self._items[alias] = value

    def delete_secret(self, alias: str) -> None:
        self._items.pop(alias, None)


class EnvSecretStore:
    """从环境变量读取密钥：provider:3 -> DREAMQUILL_SECRET_PROVIDER_3。"""

    def __init__(self, prefix: Optional[str] = None):
        self._prefix = prefix if prefix is not None else settings.secret_env_prefix

    def env_name(self, alias: str) -> str:
        return self._prefix + re.sub(r"[^A-Za-z0-9]", "_", alias).upper()

    def get_secret(self, alias: str) -> Optional[str]:
        return os.environ.get(self.env_name(alias)) or None

    def set_secret(self, alias: str, value: str) -> None:
        os.environ[self.env_name(alias)] = value

    def delete_secret(self, alias: str) -> None:
        os.environ.pop(self.env_name(alias), None)


def resolve_credential(profile: VendorProfile, secrets: SecretStore) -> VendorProfile:
    """凭据为空且设置了别名时，从 SecretStore 补全。"""

    if profile.credential or not profile.secret_alias:
        return profile
    secret = secrets.get_secret(profile.secret_alias)
    if not secret:
        raise ValidationError(code="MISSING_CREDENTIAL", message="未找到模型服务密钥，请重新配置")
    return profile.with_credential(secret)
