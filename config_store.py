#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
YAML-backed state for the mail snapshot, the business accounts and the proxy.

Documents are always loaded and saved whole. Anything that changes a
document is a pure function returning a new one; the operation that
called it decides when to write.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from common import get_logger, pick_conf
from errors import AuthError, ConfigError
from models import NO_TOKENS_REASON, MailCredentials, SessionTokens

TEMP_MAIL_FILE = "temp-mail.yaml"
GEMINI_MAIL_FILE = "gemini-mail.yaml"
PROXY_FILE = "proxy.yaml"

DEFAULT_HTTP_TIMEOUT = 30


def empty_parent(email: str = "", create_time: str = "") -> Dict[str, Any]:
    return {
        "email": email,
        "accountId": None,
        "name": "",
        "status": None,
        "latestEmailTime": "",
        "createTime": create_time,
    }


def normalize_temp_mail(raw: Dict[str, Any]) -> Dict[str, Any]:
    doc = copy.deepcopy(raw)
    if not isinstance(doc.get("credentials"), dict):
        doc["credentials"] = {"account": "", "password": ""}

    accounts = doc.get("accounts")
    if not isinstance(accounts, dict):
        accounts = {}
    accounts["parent"] = accounts.get("parent") or empty_parent()
    children = accounts.get("children")
    accounts["children"] = children if isinstance(children, list) else []
    accounts["lastUpdated"] = accounts.get("lastUpdated") or ""
    doc["accounts"] = accounts
    return doc


def apply_account_snapshot(
    doc: Dict[str, Any],
    parent: Dict[str, Any],
    children: List[Dict[str, Any]],
    updated_at: str,
) -> Dict[str, Any]:
    new_doc = copy.deepcopy(doc)
    new_doc["accounts"] = {
        "parent": copy.deepcopy(parent),
        "children": copy.deepcopy(children),
        "lastUpdated": updated_at,
    }
    return new_doc


def apply_refreshed_tokens(account: Dict[str, Any], tokens: SessionTokens, updated_at: str) -> Dict[str, Any]:
    new_account = copy.deepcopy(account)
    new_account["tokens"] = tokens.to_dict()
    new_account["lastUpdated"] = updated_at
    # only the marker written by the pool sync is cleared; a manual skip reason stays
    if new_account.get("skipReason") == NO_TOKENS_REASON:
        new_account.pop("skipReason", None)
        new_account.pop("skipTime", None)
    return new_account


def mark_missing_tokens(account: Dict[str, Any], marked_at: str) -> Dict[str, Any]:
    new_account = copy.deepcopy(account)
    if not new_account.get("tokens") and not new_account.get("skipReason"):
        new_account["skipReason"] = NO_TOKENS_REASON
        new_account["skipTime"] = marked_at
    return new_account


def replace_children(doc: Dict[str, Any], children: List[Dict[str, Any]]) -> Dict[str, Any]:
    new_doc = copy.deepcopy(doc)
    accounts = dict(new_doc.get("accounts") or {})
    accounts["children"] = copy.deepcopy(children)
    new_doc["accounts"] = accounts
    return new_doc


def select_children(children: List[Dict[str, Any]], ids: Iterable[Any]) -> List[Dict[str, Any]]:
    """Pick children by 1-based position in the list, not by their accountId.

    Ids outside the list are dropped silently; request order is kept.
    """
    selected = []
    for raw_id in ids:
        try:
            index = int(raw_id) - 1
        except (TypeError, ValueError):
            continue
        if 0 <= index < len(children):
            selected.append(copy.deepcopy(children[index]))
    return selected


def build_business_selection(
    gemini_doc: Dict[str, Any],
    parent: Dict[str, Any],
    selected: List[Dict[str, Any]],
) -> Dict[str, Any]:
    new_doc = copy.deepcopy(gemini_doc)
    new_doc["accounts"] = {"parent": copy.deepcopy(parent), "children": copy.deepcopy(selected)}
    return new_doc


class ConfigStore:
    def __init__(self, config_dir: Path, logger: Optional[logging.Logger] = None):
        self.config_dir = Path(config_dir)
        self.logger = get_logger(logger)

    @property
    def temp_mail_path(self) -> Path:
        return self.config_dir / TEMP_MAIL_FILE

    @property
    def gemini_mail_path(self) -> Path:
        return self.config_dir / GEMINI_MAIL_FILE

    @property
    def proxy_path(self) -> Path:
        return self.config_dir / PROXY_FILE

    def _read(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigError(f"配置文件缺失: {path}")
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"配置文件解析失败: {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"配置文件格式错误，顶层必须是对象: {path}")
        return data

    def _write(self, path: Path, doc: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(doc, f, allow_unicode=True, sort_keys=False, default_flow_style=False, width=1 << 16)
        self.logger.info("%s 配置已更新", path.name)

    def load_temp_mail(self) -> Dict[str, Any]:
        return normalize_temp_mail(self._read(self.temp_mail_path))

    def save_temp_mail(self, doc: Dict[str, Any]) -> None:
        self._write(self.temp_mail_path, doc)

    def load_gemini_mail(self, require_parent: bool = True) -> Dict[str, Any]:
        raw = self._read(self.gemini_mail_path)
        accounts = raw.get("accounts")
        if not isinstance(accounts, dict):
            raise ConfigError(f"{GEMINI_MAIL_FILE} 格式错误：缺少 accounts 字段")
        if require_parent and not accounts.get("parent"):
            raise ConfigError(f"{GEMINI_MAIL_FILE} 格式错误：缺少 parent 账号信息")
        if not isinstance(accounts.get("children"), list):
            accounts["children"] = []
        return raw

    def save_gemini_mail(self, doc: Dict[str, Any]) -> None:
        self._write(self.gemini_mail_path, doc)

    def load_proxy_doc(self) -> Optional[Dict[str, Any]]:
        if not self.proxy_path.exists():
            return None
        return self._read(self.proxy_path)

    def get_email_credentials(self) -> MailCredentials:
        conf = self.load_temp_mail()
        creds = conf.get("credentials") or {}
        account = str(creds.get("account") or "").strip()
        password = str(creds.get("password") or "")
        if not account or not password:
            raise AuthError(f"请在 {TEMP_MAIL_FILE} 中填写 account 与 password 字段")
        api_url = str(conf.get("emailApiUrl") or "").rstrip("/")
        if not api_url:
            raise ConfigError(f"{TEMP_MAIL_FILE} 中未配置 emailApiUrl")
        return MailCredentials(
            account=account,
            password=password,
            default_domain=str(conf.get("defaultDomain") or ""),
            api_url=api_url,
        )

    def get_pool_settings(self, doc: Optional[Dict[str, Any]] = None) -> tuple[str, str]:
        conf = doc if doc is not None else self.load_gemini_mail()
        pool_url = str(conf.get("poolApiUrl") or "").rstrip("/")
        password = str(conf.get("password") or "")
        if not pool_url:
            raise ConfigError(f"{GEMINI_MAIL_FILE} 中未配置 poolApiUrl")
        if not password:
            raise ConfigError(f"{GEMINI_MAIL_FILE} 中未配置密码")
        return pool_url, password

    def get_http_timeout(self) -> int:
        try:
            conf = self._read(self.gemini_mail_path)
        except ConfigError:
            return DEFAULT_HTTP_TIMEOUT
        raw = pick_conf(conf, "http", "timeout", default=DEFAULT_HTTP_TIMEOUT)
        try:
            timeout = int(raw or DEFAULT_HTTP_TIMEOUT)
        except (TypeError, ValueError):
            self.logger.warning("http.timeout 配置无效: %s，使用默认值 %s 秒", raw, DEFAULT_HTTP_TIMEOUT)
            return DEFAULT_HTTP_TIMEOUT
        return timeout if timeout > 0 else DEFAULT_HTTP_TIMEOUT


def select_business_accounts(store: ConfigStore, ids: Iterable[Any]) -> List[Dict[str, Any]]:
    """Copy the chosen temp-mail children into gemini-mail.yaml, replacing its account list."""
    temp_conf = store.load_temp_mail()
    children = temp_conf["accounts"]["children"]
    if not children:
        raise ConfigError("没有找到任何子号，请先在邮箱管理中创建子号")

    gemini_conf = store.load_gemini_mail()
    selected = select_children(children, ids)
    if not selected:
        raise ConfigError("没有选择任何有效的账号")

    store.save_gemini_mail(build_business_selection(gemini_conf, temp_conf["accounts"]["parent"], selected))
    store.logger.info("已选择 %s 个账号并保存到 %s", len(selected), GEMINI_MAIL_FILE)
    return selected
