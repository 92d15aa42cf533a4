#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import logging
import random
import string
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

import requests

from common import create_session, get_logger, mask, now_iso, preview, safe_json_text
from config_store import ConfigStore, apply_account_snapshot, empty_parent
from errors import AuthError, ManagerError, NotFoundError, ProviderError, VerificationTimeoutError
from models import BatchCreateResult, VerificationInfo
from verification import BUSINESS_CODE_SUBJECT, extract_business_code, find_mail_verification

LOCAL_PART_CHARS = string.ascii_letters + string.digits
LOCAL_PART_LENGTH = 15

CODE_POLL_ATTEMPTS = 5
CODE_POLL_INTERVAL = 5.0
BATCH_WORKERS = 5


def generate_local_part(length: int = LOCAL_PART_LENGTH) -> str:
    return "".join(random.choice(LOCAL_PART_CHARS) for _ in range(length))


def split_accounts(items: List[Dict[str, Any]], login_email: str) -> tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """Separate the login identity (parent) from the disposable children.

    When the provider list does not contain the login email a parent with
    ``accountId: None`` is synthesized and every entry becomes a child.
    """
    parent: Optional[Dict[str, Any]] = None
    children: List[Dict[str, Any]] = []
    for item in items:
        if parent is None and isinstance(item, dict) and item.get("email") == login_email:
            parent = item
            continue
        children.append(item)
    if parent is None:
        parent = empty_parent(login_email, now_iso())
    return parent, children


class MailClient:
    def __init__(
        self,
        store: ConfigStore,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
        timeout: int = 30,
        sleep: Callable[[float], None] = time.sleep,
        session_factory: Callable[[], requests.Session] = create_session,
    ):
        self.store = store
        self.session_factory = session_factory
        self.session = session or session_factory()
        self.logger = get_logger(logger)
        self.timeout = timeout
        self.sleep = sleep

    def fork(self) -> "MailClient":
        """Same settings, fresh session; requests sessions are not shared across threads."""
        return MailClient(
            self.store,
            logger=self.logger,
            timeout=self.timeout,
            sleep=self.sleep,
            session_factory=self.session_factory,
        )

    def _url(self, path: str) -> str:
        # re-read on every call so an edited temp-mail.yaml takes effect without a restart
        return f"{self.store.get_email_credentials().api_url}{path}"

    def _call(
        self,
        method: str,
        path: str,
        token: str = "",
        error_cls: type = ProviderError,
        action: str = "请求邮箱服务",
        **kwargs: Any,
    ) -> Dict[str, Any]:
        headers = dict(kwargs.pop("headers", {}) or {})
        if token:
            headers["Authorization"] = token
        try:
            resp = self.session.request(method, self._url(path), headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(f"{action}失败: {e}") from e
        if resp.status_code >= 400:
            raise error_cls(f"{action}失败，HTTP 状态码 {resp.status_code}", status_code=resp.status_code)
        payload = safe_json_text(resp.text)
        if payload.get("code") != 200:
            message = payload.get("message") or "未知错误"
            raise error_cls(f"{action}失败: {message}", status_code=resp.status_code)
        return payload

    def login(self) -> str:
        creds = self.store.get_email_credentials()
        self.logger.info("正在登录邮箱服务: %s", creds.login_email)
        try:
            payload = self._call(
                "POST",
                "/api/login",
                json={"email": creds.login_email, "password": creds.password},
                action="登录",
            )
        except ProviderError as e:
            raise AuthError(str(e)) from e
        data = payload.get("data") or {}
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("登录失败: 响应中没有 token")
        self.logger.info("邮箱服务登录成功")
        return str(token)

    def list_accounts(self, token: str) -> tuple[Dict[str, Any], List[Dict[str, Any]]]:
        self.logger.info("正在获取邮箱账户列表")
        payload = self._call(
            "GET",
            "/api/account/list",
            token,
            params={"accountId": 0, "size": 100},
            action="获取邮箱列表",
        )
        items = payload.get("data")
        if not isinstance(items, list):
            raise ProviderError("获取邮箱列表失败: data 不是列表")

        parent, children = split_accounts(items, self.store.get_email_credentials().login_email)
        self.store.save_temp_mail(apply_account_snapshot(self.store.load_temp_mail(), parent, children, now_iso()))
        self.logger.info("已获取母号 %s 和 %s 个子号", parent.get("email"), len(children))
        return parent, children

    def create_account(self, token: str) -> Dict[str, Any]:
        creds = self.store.get_email_credentials()
        email = f"{generate_local_part()}{creds.default_domain}"
        self.logger.info("正在创建新子号: %s", email)
        payload = self._call(
            "POST",
            "/api/account/add",
            token,
            json={"email": email, "token": ""},
            action="创建子号",
        )
        account = payload.get("data")
        if not isinstance(account, dict):
            raise ProviderError("创建子号失败: 响应中没有账户数据")
        self.logger.info("子号创建成功: %s", account.get("email"))
        return account

    def delete_account(self, token: str, account_id: Any) -> Dict[str, Any]:
        self.logger.info("正在删除账号 ID: %s", account_id)
        payload = self._call(
            "DELETE",
            "/api/account/delete",
            token,
            params={"accountId": account_id},
            error_cls=NotFoundError,
            action="删除账号",
        )
        self.logger.info("账号 ID %s 删除成功", account_id)
        return payload

    def list_emails(self, token: str, account_id: Any, size: int = 5) -> Dict[str, Any]:
        payload = self._call(
            "GET",
            "/api/email/list",
            token,
            params={"accountId": account_id, "emailId": 0, "timeSort": 0, "size": size, "type": 0},
            action="获取邮件列表",
        )
        data = payload.get("data")
        return data if isinstance(data, dict) else {"list": []}

    def get_email_detail(self, token: str, email_id: Any) -> Dict[str, Any]:
        payload = self._call("GET", "/api/email/detail", token, params={"id": email_id}, action="获取邮件详情")
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def get_latest_verification_code(self, token: str, account_id: Any) -> VerificationInfo:
        self.logger.info("正在获取账户 ID %s 的最新邮件", account_id)
        emails = self.list_emails(token, account_id, 10).get("list") or []
        if not emails:
            raise NotFoundError("该账号暂无邮件")
        info = find_mail_verification(emails)
        if info is None:
            raise NotFoundError("未找到验证码邮件")
        self.logger.info("找到验证码: %s", info.code)
        return info

    def _business_code_from(self, token: str, email: Dict[str, Any]) -> Optional[str]:
        text = str(email.get("text") or "")
        if not text and email.get("id"):
            try:
                detail = self.get_email_detail(token, email["id"])
                text = str(detail.get("text") or detail.get("content") or "")
                self.logger.info("   已获取邮件详细内容")
            except ManagerError as e:
                self.logger.warning("   获取邮件详细内容失败: %s", e)
        code = extract_business_code(text)
        if not code:
            self.logger.info("   无法从邮件内容中提取验证码, 内容预览: %s", preview(text))
        return code

    def wait_for_login_code(
        self,
        token: str,
        account_id: Any,
        attempts: int = CODE_POLL_ATTEMPTS,
        interval: float = CODE_POLL_INTERVAL,
    ) -> str:
        self.logger.info("   开始为账户ID %s 获取验证码 (token=%s)", account_id, mask(token))
        for i in range(attempts):
            self.logger.info("   正在获取验证码... (尝试 %s/%s)", i + 1, attempts)
            try:
                emails = self.list_emails(token, account_id, 5).get("list") or []
                match = next(
                    (e for e in emails if isinstance(e, dict) and e.get("subject") == BUSINESS_CODE_SUBJECT),
                    None,
                )
                if match is None:
                    self.logger.info("   未找到验证码邮件 (共 %s 封)", len(emails))
                else:
                    code = self._business_code_from(token, match)
                    if code:
                        self.logger.info("   成功获取验证码: %s", code)
                        return code
            except ManagerError as e:
                self.logger.warning("   获取邮件失败: %s", e)

            if i < attempts - 1:
                self.logger.info("   未找到验证码，等待 %s 秒后重试...", interval)
                self.sleep(interval)

        self.logger.error("   已尝试 %s 次，仍未能获取到验证码", attempts)
        raise VerificationTimeoutError(attempts)


def create_accounts_batch(
    client: MailClient,
    token: str,
    count: int,
    workers: int = BATCH_WORKERS,
) -> BatchCreateResult:
    result = BatchCreateResult()
    if count <= 0:
        return result

    with ThreadPoolExecutor(max_workers=max(1, min(workers, count))) as executor:
        futures = [executor.submit(lambda: client.fork().create_account(token)) for _ in range(count)]
        for fut in as_completed(futures):
            try:
                result.created.append(fut.result())
            except ManagerError as e:
                result.errors.append(str(e))

    client.logger.info("批量创建完成: 成功 %s 个，失败 %s 个", len(result.created), len(result.errors))
    return result


def delete_all_children(client: MailClient, token: str) -> tuple[int, int]:
    """Delete every child from a fresh account listing; a provider 404 means it is already gone."""
    _, children = client.list_accounts(token)
    deleted = 0
    failed = 0
    for child in children:
        account_id = child.get("accountId")
        try:
            client.delete_account(token, account_id)
            deleted += 1
        except ProviderError as e:
            if e.status_code == 404:
                deleted += 1
                continue
            failed += 1
            client.logger.warning("删除账号 %s 失败: %s", account_id, e)
    client.logger.info("删除完成: 成功 %s 个，失败 %s 个", deleted, failed)
    return deleted, failed
