#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from browser_session import BrowserLauncher, BrowserSessionDriver
from common import resolve_config_dir, setup_logger
from config_store import ConfigStore, select_business_accounts
from errors import AuthError, ConfigError, ConfigMismatchError, ManagerError, ProviderError
from mail_client import BATCH_WORKERS, MailClient, create_accounts_batch, delete_all_children
from pool_sync import PoolSynchronizer
from proxy_resolver import probe_proxy, resolve_proxy
from token_refresher import TokenRefresher

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_FAILED = 4
EXIT_UNEXPECTED = 5


def build_mail_client(store: ConfigStore, logger: logging.Logger) -> MailClient:
    return MailClient(store, logger=logger, timeout=store.get_http_timeout())


def run_refresh(store: ConfigStore, logger: logging.Logger, sync_pool: bool = True, headless: bool = True) -> Dict[str, Any]:
    """Mail login, refresh every business child through the browser, then push to the pool."""
    mail = build_mail_client(store, logger)

    logger.info("步骤 1: 获取邮箱服务令牌...")
    mail_token = mail.login()
    login_email = store.get_email_credentials().login_email

    logger.info("步骤 2: 开始刷新所有子账户的令牌...")
    driver = BrowserSessionDriver(mail, store, launcher=BrowserLauncher(headless=headless, logger=logger), logger=logger)
    refresh = TokenRefresher(store, driver, logger=logger).refresh_all(login_email, mail_token)

    data: Dict[str, Any] = {"refreshResult": refresh.to_dict()}
    if sync_pool:
        logger.info("步骤 3: 同步 Token 到账户池平台...")
        data["poolResult"] = PoolSynchronizer(store, logger=logger).update_pool().to_dict()
    return data


def cmd_login(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    return {"token": build_mail_client(store, logger).login()}


def cmd_accounts(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    mail = build_mail_client(store, logger)
    parent, children = mail.list_accounts(mail.login())
    return {"parent": parent, "children": children, "total": len(children) + 1}


def cmd_create(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    mail = build_mail_client(store, logger)
    token = mail.login()
    if args.count == 1:
        return {"account": mail.create_account(token)}
    return create_accounts_batch(mail, token, args.count, workers=args.workers).to_dict()


def cmd_delete(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    mail = build_mail_client(store, logger)
    try:
        mail.delete_account(mail.login(), args.account_id)
    except ProviderError as e:
        if e.status_code != 404:
            raise
        logger.info("账号 ID %s 已不存在，视为删除成功", args.account_id)
    return {"accountId": args.account_id, "deleted": True}


def cmd_delete_all(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    mail = build_mail_client(store, logger)
    deleted, failed = delete_all_children(mail, mail.login())
    return {"deletedCount": deleted, "failedCount": failed}


def cmd_code(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    mail = build_mail_client(store, logger)
    return mail.get_latest_verification_code(mail.login(), args.account_id).to_dict()


def cmd_business_accounts(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    accounts = store.load_gemini_mail()["accounts"]
    return {"parent": accounts["parent"], "children": accounts["children"], "total": len(accounts["children"]) + 1}


def cmd_select(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    selected = select_business_accounts(store, args.ids)
    return {
        "count": len(selected),
        "accounts": [{"email": c.get("email"), "accountId": c.get("accountId")} for c in selected],
    }


def cmd_refresh(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    return run_refresh(store, logger, sync_pool=not args.skip_pool, headless=not args.headed)


def cmd_update_pool(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    return PoolSynchronizer(store, logger=logger).update_pool().to_dict()


def cmd_clean_invalid(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    return PoolSynchronizer(store, logger=logger).clean_invalid().to_dict()


def cmd_proxy_test(args: argparse.Namespace, store: ConfigStore, logger: logging.Logger) -> Dict[str, Any]:
    proxy = resolve_proxy(store, logger)
    return {"enabled": proxy.enabled, "server": proxy.server_url(), "working": probe_proxy(proxy, logger=logger)}


Handler = Callable[[argparse.Namespace, ConfigStore, logging.Logger], Dict[str, Any]]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    script_dir = Path(__file__).resolve().parent
    default_log_dir = script_dir / "logs"

    parser = argparse.ArgumentParser(description="临时邮箱与 Business 账户池管理")
    parser.add_argument("--config-dir", default=None, help="配置目录（默认读取 BUSINESS_MANAGER_CONFIG_DIR，最终默认 ./config）")
    parser.add_argument("--log-dir", default=str(default_log_dir), help="日志目录")
    sub = parser.add_subparsers(dest="command", required=True)

    def add(name: str, handler: Handler, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.set_defaults(handler=handler)
        return p

    add("login", cmd_login, "登录邮箱服务并输出令牌")
    add("accounts", cmd_accounts, "获取母号与子号列表并保存快照")
    p = add("create", cmd_create, "创建子号")
    p.add_argument("--count", type=int, default=1, help="创建数量")
    p.add_argument("--workers", type=int, default=BATCH_WORKERS, help="批量创建并发数")
    p = add("delete", cmd_delete, "删除指定子号")
    p.add_argument("account_id", type=int)
    add("delete-all", cmd_delete_all, "删除所有子号")
    p = add("code", cmd_code, "获取子号最新验证码")
    p.add_argument("account_id", type=int)
    add("business-accounts", cmd_business_accounts, "列出 Business 配置中的账户")
    p = add("select", cmd_select, "按序号（从 1 开始）选择 Business 账户")
    p.add_argument("ids", type=int, nargs="+")
    p = add("refresh", cmd_refresh, "刷新所有 Business 账户令牌并同步到账户池")
    p.add_argument("--skip-pool", action="store_true", help="只刷新令牌，不同步账户池")
    p.add_argument("--headed", action="store_true", help="显示浏览器窗口")
    add("update-pool", cmd_update_pool, "删除账户池全部账户并重新添加")
    add("clean-invalid", cmd_clean_invalid, "检测并删除账户池中的无效账户")
    add("proxy-test", cmd_proxy_test, "测试代理连通性")
    return parser.parse_args(argv)


def exit_code_for(exc: Exception) -> int:
    if isinstance(exc, (ConfigError, ConfigMismatchError)):
        return EXIT_CONFIG
    if isinstance(exc, AuthError):
        return EXIT_AUTH
    if isinstance(exc, ManagerError):
        return EXIT_FAILED
    return EXIT_UNEXPECTED


def main(argv: Optional[List[str]] = None) -> int:
    requests.packages.urllib3.disable_warnings()  # type: ignore[attr-defined]

    args = parse_args(argv)
    config_dir = resolve_config_dir(args.config_dir)
    logger, log_path = setup_logger(Path(args.log_dir).resolve())
    logger.info("=== %s 开始 ===", args.command)
    logger.info("配置目录: %s", config_dir)
    logger.info("日志文件: %s", log_path)

    store = ConfigStore(config_dir, logger=logger)
    try:
        data = args.handler(args, store, logger)
    except Exception as e:
        logger.error("%s 失败: %s", args.command, e)
        logger.info("=== %s 结束（失败）===", args.command)
        return exit_code_for(e)

    print(json.dumps({"success": True, "data": data}, ensure_ascii=False, indent=2, default=str))
    logger.info("=== %s 结束（成功）===", args.command)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
