#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from common import get_logger, now_iso
from config_store import GEMINI_MAIL_FILE, ConfigStore, apply_refreshed_tokens, replace_children
from errors import ConfigError, ConfigMismatchError
from models import RefreshResult

ACCOUNT_SPACING = 2.0


class TokenRefresher:
    """Log every configured child in through the browser and store its new tokens."""

    def __init__(
        self,
        store: ConfigStore,
        driver: Any,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
        spacing: float = ACCOUNT_SPACING,
        clock: Callable[[], str] = now_iso,
    ):
        self.store = store
        self.driver = driver
        self.logger = get_logger(logger)
        self.sleep = sleep
        self.spacing = spacing
        self.clock = clock

    def refresh_all(self, login_email: str, mail_token: str) -> RefreshResult:
        # a missing parent is an identity mismatch, not a format error
        conf = self.store.load_gemini_mail(require_parent=False)
        parent = conf["accounts"].get("parent") or {}
        if not parent.get("email") or parent.get("email") != login_email:
            self.logger.warning("母号不匹配！配置文件中的母号: %s, 当前登录的母号: %s", parent.get("email"), login_email)
            raise ConfigMismatchError(parent.get("email"), login_email)

        children: List[Dict[str, Any]] = conf["accounts"]["children"]
        if not children:
            raise ConfigError(f"{GEMINI_MAIL_FILE} 中没有子账户，请先选择账户")

        self.logger.info("准备刷新 %s 个账户的令牌...", len(children))
        result = RefreshResult()
        updated: List[Dict[str, Any]] = []

        for index, child in enumerate(children):
            email = str(child.get("email") or "")
            self.logger.info("正在刷新账户 (%s/%s): %s", index + 1, len(children), email)
            try:
                login = self.driver.login(child, mail_token)
            except Exception as e:
                # ManagerError from the flow itself, anything else straight from playwright
                result.failure_count += 1
                result.outcomes[email] = type(e).__name__
                self.logger.error("账户 %s 令牌刷新失败: %s", email, e)
                updated.append(child)
            else:
                result.success_count += 1
                result.outcomes[email] = login.outcome.value
                updated.append(apply_refreshed_tokens(child, login.tokens, self.clock()))
                self.logger.info("账户 %s 令牌刷新成功", email)

            if index < len(children) - 1:
                self.sleep(self.spacing)

        self.store.save_gemini_mail(replace_children(conf, updated))
        self.logger.info("令牌刷新完成: 成功 %s 个，失败 %s 个", result.success_count, result.failure_count)
        return result
