#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from common import create_session, get_logger
from config_store import ConfigStore
from errors import ConfigError
from models import ProxyConfig

PROBE_URL = "https://www.google.com"
PROBE_TIMEOUT = 15
PROBE_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}


def as_bool(value: Any) -> bool:
    # quoted YAML values ("false", "0") arrive as strings
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def proxy_from_section(section: Any) -> ProxyConfig:
    if not isinstance(section, dict):
        return ProxyConfig()
    try:
        port = int(section.get("port") or 8080)
    except (TypeError, ValueError):
        port = 8080
    return ProxyConfig(
        enabled=as_bool(section.get("enabled")),
        type=str(section.get("type") or "http").lower(),
        url=str(section.get("url") or "127.0.0.1"),
        port=port,
        username=str(section.get("username") or ""),
        password=str(section.get("password") or ""),
    )


def resolve_proxy(store: ConfigStore, logger: Optional[logging.Logger] = None) -> ProxyConfig:
    """Proxy settings from proxy.yaml; any problem yields the disabled default."""
    try:
        doc: Optional[Dict[str, Any]] = store.load_proxy_doc()
    except (ConfigError, OSError) as e:
        get_logger(logger).error("读取代理配置文件出错: %s", e)
        return ProxyConfig()
    if not doc:
        return ProxyConfig()
    return proxy_from_section(doc.get("proxy"))


def probe_proxy(
    config: ProxyConfig,
    session: Optional[requests.Session] = None,
    logger: Optional[logging.Logger] = None,
) -> bool:
    logger = get_logger(logger)
    if not config.enabled:
        return False

    proxy_url = config.requests_url()
    logger.info("测试代理: %s -> %s", config.server_url(), PROBE_URL)
    s = session or create_session(proxy=proxy_url)
    if session is not None:
        s.proxies = {"http": proxy_url, "https": proxy_url}
    try:
        resp = s.get(
            PROBE_URL,
            headers=PROBE_HEADERS,
            timeout=PROBE_TIMEOUT,
            allow_redirects=False,
            verify=False,
        )
    except Exception as e:
        logger.error("代理测试失败: %s", e)
        return False

    logger.info("代理测试结果，状态码: %s", resp.status_code)
    if 200 <= resp.status_code < 400:
        logger.info("代理已生效")
        return True
    logger.warning("代理可能未生效，状态码: %s", resp.status_code)
    if resp.status_code == 400:
        logger.warning("状态码400通常表示代理配置问题，请检查代理地址、端口、用户名密码与代理类型")
    return False

