#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from common import BROWSER_USER_AGENT, create_session, get_logger, now_iso, preview, safe_json_text
from config_store import GEMINI_MAIL_FILE, ConfigStore, mark_missing_tokens, replace_children
from errors import AuthError, ConfigError, ProviderError
from models import NO_TOKENS_REASON, CleanResult, PoolUpdateResult, SessionTokens, is_syncable

DELETE_SPACING = 0.3
ADD_SPACING = 0.3
TEST_SPACING = 0.5


def admin_headers(token: str) -> Dict[str, str]:
    return {"x-admin-token": token, "Accept": "application/json"}


class PoolClient:
    """Thin wrapper over the pool service admin API."""

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
        timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or create_session()
        self.logger = get_logger(logger)
        self.timeout = timeout

    def login(self, password: str) -> str:
        self.logger.info("正在登录账户池平台...")
        try:
            resp = self.session.post(f"{self.base_url}/api/auth/login", json={"password": password}, timeout=self.timeout)
        except requests.RequestException as e:
            raise AuthError(f"登录账户池失败: {e}") from e
        data = safe_json_text(resp.text)
        if resp.status_code >= 400 or not data.get("token"):
            raise AuthError(f"登录账户池失败: HTTP {resp.status_code}, 响应中没有 token")
        self.logger.info("登录成功！")
        return str(data["token"])

    def list_accounts(self, admin_token: str) -> List[Dict[str, Any]]:
        try:
            resp = self.session.get(f"{self.base_url}/api/accounts", headers=admin_headers(admin_token), timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderError(f"获取平台账户失败: {e}") from e
        if resp.status_code >= 400:
            raise ProviderError(f"获取平台账户失败: HTTP {resp.status_code}", status_code=resp.status_code)
        accounts = safe_json_text(resp.text).get("accounts")
        if not isinstance(accounts, list):
            raise ProviderError("获取账户列表失败: 响应中没有 accounts")
        self.logger.info("找到 %s 个平台账户", len(accounts))
        return accounts

    def test_account(self, admin_token: str, account_id: Any) -> bool:
        try:
            resp = self.session.get(
                f"{self.base_url}/api/accounts/{account_id}/test",
                headers=admin_headers(admin_token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            self.logger.warning("测试账户 %s 失败: %s", account_id, e)
            return False
        if resp.status_code >= 400:
            return False
        return safe_json_text(resp.text).get("success") is True

    def delete_account(self, admin_token: str, account_id: Any) -> bool:
        try:
            resp = self.session.delete(
                f"{self.base_url}/api/accounts/{account_id}",
                headers=admin_headers(admin_token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            self.logger.warning("删除账户 %s 失败: %s", account_id, e)
            return False
        if resp.status_code == 404:
            return True
        if 200 <= resp.status_code < 300:
            return True
        self.logger.warning("删除账户 %s 失败: HTTP %s %s", account_id, resp.status_code, preview(resp.text))
        return False

    def add_account(self, admin_token: str, tokens: SessionTokens, user_agent: str = BROWSER_USER_AGENT) -> bool:
        payload = {
            "team_id": tokens.team_id,
            "secure_c_ses": tokens.secure_c_ses,
            "host_c_oses": tokens.host_c_oses,
            "csesidx": tokens.csesidx,
            "user_agent": user_agent,
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/api/accounts",
                json=payload,
                headers=admin_headers(admin_token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            self.logger.warning("添加账户失败: %s", e)
            return False
        ok = resp.status_code < 400 and safe_json_text(resp.text).get("success") is True
        if not ok:
            self.logger.warning("添加账户失败: HTTP %s %s", resp.status_code, preview(resp.text))
        return ok


class PoolSynchronizer:
    def __init__(
        self,
        store: ConfigStore,
        client_factory: Optional[Callable[[str], PoolClient]] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], str] = now_iso,
    ):
        self.store = store
        self.logger = get_logger(logger)
        self.client_factory = client_factory or self._default_client
        self.sleep = sleep
        self.clock = clock

    def _default_client(self, base_url: str) -> PoolClient:
        return PoolClient(base_url, logger=self.logger, timeout=self.store.get_http_timeout())

    def _connect(self, conf: Optional[Dict[str, Any]] = None) -> tuple[PoolClient, str]:
        pool_url, password = self.store.get_pool_settings(conf)
        client = self.client_factory(pool_url)
        return client, client.login(password)

    def delete_all(self, client: PoolClient, admin_token: str) -> int:
        accounts = client.list_accounts(admin_token)
        if not accounts:
            self.logger.info("平台上没有账户需要删除")
            return 0

        self.logger.info("开始删除所有账户（共 %s 个）...", len(accounts))
        deleted = 0
        for account in accounts:
            account_id = account.get("id")
            if client.delete_account(admin_token, account_id):
                deleted += 1
            else:
                self.logger.warning("账户 %s 删除失败", account_id)
            self.sleep(DELETE_SPACING)
        self.logger.info("已删除: %s/%s 个账户", deleted, len(accounts))
        return deleted

    def update_pool(self) -> PoolUpdateResult:
        """Replace every pool entry with the local children that hold a full token set."""
        self.logger.info("读取账户信息...")
        conf = self.store.load_gemini_mail()
        children: List[Dict[str, Any]] = conf["accounts"]["children"]
        if not children:
            raise ConfigError(f"{GEMINI_MAIL_FILE} 中没有子账户，请先选择账户")

        client, admin_token = self._connect(conf)
        result = PoolUpdateResult()
        result.deleted_count = self.delete_all(client, admin_token)

        self.logger.info("=== 开始添加账户 ===")
        marked_at = self.clock()
        updated: List[Dict[str, Any]] = []
        for child in children:
            email = child.get("email")
            if not is_syncable(child):
                self.logger.info("跳过账户 %s: %s", email, child.get("skipReason") or NO_TOKENS_REASON)
                result.skipped_count += 1
                updated.append(mark_missing_tokens(child, marked_at))
                continue

            updated.append(child)
            tokens = SessionTokens.from_dict(child.get("tokens"))
            if client.add_account(admin_token, tokens):
                self.logger.info("账户 %s 添加成功", email)
                result.added_count += 1
            else:
                self.logger.warning("账户 %s 添加失败", email)
                result.failed_count += 1
            self.sleep(ADD_SPACING)

        if updated != children:
            self.store.save_gemini_mail(replace_children(conf, updated))

        result.total_count = len(client.list_accounts(admin_token))
        self.logger.info(
            "=== 添加完成 === 成功添加: %s, 跳过: %s, 失败: %s, 当前总数: %s",
            result.added_count,
            result.skipped_count,
            result.failed_count,
            result.total_count,
        )
        return result

    def clean_invalid(self) -> CleanResult:
        client, admin_token = self._connect()
        accounts = client.list_accounts(admin_token)
        result = CleanResult()
        if not accounts:
            self.logger.info("平台上没有账户")
            return result

        self.logger.info("开始检测账户有效性...")
        for account in accounts:
            account_id = account.get("id")
            if client.test_account(admin_token, account_id):
                self.logger.info("账户 %s 可用", account_id)
                result.valid_count += 1
            else:
                result.invalid_count += 1
                self.logger.info("账户 %s 不可用，正在删除...", account_id)
                if not client.delete_account(admin_token, account_id):
                    result.delete_failed_count += 1
                    self.logger.warning("账户 %s 删除失败", account_id)
            self.sleep(TEST_SPACING)

        self.logger.info(
            "清理完成: 存活账户 %s/%s，无效账户 %s 个（删除失败 %s 个）",
            result.valid_count,
            len(accounts),
            result.invalid_count,
            result.delete_failed_count,
        )
        return result
