#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

from typing import Iterable, List, Optional

__all__ = [
    "ManagerError",
    "ConfigError",
    "AuthError",
    "ProviderError",
    "NotFoundError",
    "VerificationTimeoutError",
    "IncompleteTokenError",
    "ConfigMismatchError",
]


class ManagerError(RuntimeError):
    """Base class for every failure the manager reports on purpose."""


class ConfigError(ManagerError):
    pass


class AuthError(ManagerError):
    pass


class ProviderError(ManagerError):
    """Non-success envelope or HTTP status from the mail or pool API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ProviderError):
    pass


class VerificationTimeoutError(ManagerError):
    def __init__(self, attempts: int):
        super().__init__(f"已尝试 {attempts} 次，仍未能获取到验证码")
        self.attempts = attempts


class IncompleteTokenError(ManagerError):
    def __init__(self, missing: Iterable[str], url: str = ""):
        self.missing: List[str] = list(missing)
        self.url = url
        super().__init__(f"Token 获取不完整，缺少: {', '.join(self.missing)}")


class ConfigMismatchError(ManagerError):
    def __init__(self, configured: Optional[str], login_email: str):
        super().__init__(f"母号不匹配！配置文件中的母号: {configured}, 当前登录的母号: {login_email}")
        self.configured = configured
        self.login_email = login_email
