#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Browser-driven login for one business account.

``LoginFlow`` walks the login pages through the narrow ``BrowserPage``
interface, so it runs the same against Playwright (``PlaywrightPage``)
and against the in-memory page used by the tests:

    submit email -> wait for the code input -> poll the inbox for the code
    -> submit code -> wait for the workspace (``/cid/``) or the onboarding
    form (``/admin/create``) -> settle -> read cookies and URL

``BrowserSessionDriver`` adds everything around one run: proxy lookup,
a throwaway Chromium profile, and teardown on every exit path.
"""

from __future__ import annotations

import enum
import logging
import random
import shutil
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol
from urllib.parse import parse_qs, urlparse

from playwright.sync_api import sync_playwright

from common import get_logger, mask
from config_store import ConfigStore
from errors import IncompleteTokenError
from models import ProxyConfig, SessionTokens
from proxy_resolver import probe_proxy, resolve_proxy

LOGIN_URL = "https://auth.business.gemini.google/login?continueUrl=https://business.gemini.google/"

EMAIL_INPUT = "#email-input"
LOGIN_BUTTON = "#log-in-button"
CODE_INPUT = 'input[name="pinInput"]'
VERIFY_BUTTON = 'button[aria-label="验证"]'
DISPLAY_NAME_INPUT = "#mat-input-0"
ONBOARD_SUBMIT = "body > saasfe-root > main > saasfe-onboard-component > div > div > div > form > button"

SESSION_COOKIE = "__Secure-C_SES"
HOST_SESSION_COOKIE = "__Host-C_OSES"
SESSION_INDEX_PARAM = "csesidx"
CID_MARKER = "/cid/"
ONBOARDING_MARKER = "/admin/create"

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--window-position=0,0",
    "--disable-blink-features=AutomationControlled",
    "--disable-features=VizDisplayCompositor,TranslateUI,AudioServiceOutOfProcess",
    "--disable-extensions",
    "--disable-plugins",
    "--disable-default-apps",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-background-networking",
    "--disable-sync",
    "--metrics-recording-only",
    "--no-default-browser-check",
    "--no-first-run",
    "--disable-component-extensions-with-background-pages",
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-software-rasterizer",
    "--disable-ipc-flooding-protection",
    "--disable-logging",
    "--disable-notifications",
    "--password-store=basic",
    "--use-mock-keychain",
    "--lang=zh-CN",
    "--window-size=1920,1080",
]

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]


class RedirectOutcome(enum.Enum):
    COMPLETED = "completed"
    ONBOARDED = "onboarded"
    REDIRECT_TIMED_OUT = "redirect_timed_out"
    REDIRECT_TIMED_OUT_ON_ONBOARDING = "redirect_timed_out_on_onboarding"

    @property
    def timed_out(self) -> bool:
        return self in (RedirectOutcome.REDIRECT_TIMED_OUT, RedirectOutcome.REDIRECT_TIMED_OUT_ON_ONBOARDING)


@dataclass
class LoginResult:
    tokens: SessionTokens
    outcome: RedirectOutcome
    final_url: str = ""


@dataclass
class FlowTimings:
    """Every wait in the login flow, in seconds unless noted."""
    page_settle: float = 3.0
    after_email: float = 2.0
    after_continue: float = 3.0
    mail_grace: float = 10.0
    code_focus: float = 0.5
    keystroke_delay_ms: int = 100
    after_code: float = 1.0
    after_verify: float = 3.0
    redirect_timeout: float = 60.0
    redirect_poll: float = 3.0
    after_display_name: float = 3.0
    after_onboard_submit: float = 3.0
    final_settle: float = 10.0
    selector_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.redirect_poll <= 0:
            raise ValueError(f"redirect_poll must be positive, got {self.redirect_poll}")

    @classmethod
    def instant(cls) -> "FlowTimings":
        return cls(
            page_settle=0,
            after_email=0,
            after_continue=0,
            mail_grace=0,
            code_focus=0,
            keystroke_delay_ms=0,
            after_code=0,
            after_verify=0,
            after_display_name=0,
            after_onboard_submit=0,
            final_settle=0,
        )


class BrowserPage(Protocol):
    def goto(self, url: str) -> None: ...

    def wait_for_selector(self, selector: str, timeout: float) -> None: ...

    def type_text(self, selector: str, text: str, delay_ms: int = 0) -> None: ...

    def clear(self, selector: str) -> None: ...

    def click(self, selector: str) -> None: ...

    def current_url(self) -> str: ...

    def cookies(self) -> List[Dict[str, Any]]: ...


def extract_session_tokens(cookies: Iterable[Dict[str, Any]], url: str) -> SessionTokens:
    """Read the four session tokens; all of them or IncompleteTokenError."""
    jar = {str(c.get("name")): str(c.get("value") or "") for c in cookies if isinstance(c, dict)}
    parsed = urlparse(url or "")
    csesidx = (parse_qs(parsed.query).get(SESSION_INDEX_PARAM) or [""])[0]

    team_id = ""
    path = parsed.path or ""
    if CID_MARKER in path:
        team_id = path.split(CID_MARKER, 1)[1].split("/", 1)[0]

    values = {
        "csesidx": csesidx,
        "host_c_oses": jar.get(HOST_SESSION_COOKIE, ""),
        "secure_c_ses": jar.get(SESSION_COOKIE, ""),
        "team_id": team_id,
    }
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise IncompleteTokenError(missing, url=url)
    return SessionTokens(**values)


class LoginFlow:
    def __init__(
        self,
        page: BrowserPage,
        fetch_code: Callable[[], str],
        timings: Optional[FlowTimings] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.page = page
        self.fetch_code = fetch_code
        self.timings = timings or FlowTimings()
        self.logger = get_logger(logger)
        self.sleep = sleep

    def run(self, email: str) -> LoginResult:
        self.submit_email(email)
        self.await_code_input()
        self.logger.info("   等待邮件发送（%s秒）...", self.timings.mail_grace)
        self.sleep(self.timings.mail_grace)
        code = self.fetch_code()
        self.submit_code(code)

        outcome = self.await_redirect()
        if outcome is None:
            outcome = self.complete_onboarding(email)
        if outcome.timed_out:
            self.logger.warning("   等待跳转超时 (%s)，仍尝试获取 token，当前 URL: %s", outcome.value, self.page.current_url())

        self.logger.info("   页面已跳转，等待完全加载（%s秒）...", self.timings.final_settle)
        self.sleep(self.timings.final_settle)
        tokens = self.extract_tokens()
        return LoginResult(tokens=tokens, outcome=outcome, final_url=self.page.current_url())

    def submit_email(self, email: str) -> None:
        t = self.timings
        self.logger.info("   访问登录页面...")
        self.page.goto(LOGIN_URL)
        self.sleep(t.page_settle)

        self.logger.info("   填入邮箱...")
        self.page.wait_for_selector(EMAIL_INPUT, t.selector_timeout)
        self.page.type_text(EMAIL_INPUT, email)
        self.sleep(t.after_email)

        self.logger.info("   点击下一步按钮...")
        self.page.click(LOGIN_BUTTON)
        self.sleep(t.after_continue)

    def await_code_input(self) -> None:
        self.logger.info("   等待验证码输入框...")
        self.page.wait_for_selector(CODE_INPUT, self.timings.selector_timeout)

    def submit_code(self, code: str) -> None:
        t = self.timings
        self.logger.info("   填入验证码...")
        self.page.click(CODE_INPUT)
        self.sleep(t.code_focus)
        self.page.clear(CODE_INPUT)
        self.page.type_text(CODE_INPUT, code, delay_ms=t.keystroke_delay_ms)
        self.sleep(t.after_code)

        self.logger.info("   点击验证按钮...")
        self.page.click(VERIFY_BUTTON)
        self.sleep(t.after_verify)

    def _poll_url(self, accept: Callable[[str], bool]) -> Optional[str]:
        elapsed = 0.0
        while True:
            url = self.page.current_url()
            if accept(url):
                return url
            if elapsed >= self.timings.redirect_timeout:
                return None
            self.logger.info("      当前 URL: %s", url)
            self.sleep(self.timings.redirect_poll)
            elapsed += self.timings.redirect_poll

    def await_redirect(self) -> Optional[RedirectOutcome]:
        """COMPLETED or REDIRECT_TIMED_OUT; None means the onboarding form is showing."""
        self.logger.info("   等待页面跳转（最多%s秒）...", self.timings.redirect_timeout)
        url = self._poll_url(lambda u: ONBOARDING_MARKER in u or CID_MARKER in u)
        if url is None:
            return RedirectOutcome.REDIRECT_TIMED_OUT
        if ONBOARDING_MARKER in url:
            self.logger.info("      检测到 URL 包含 %s，需要填写名称", ONBOARDING_MARKER)
            return None
        return RedirectOutcome.COMPLETED

    def complete_onboarding(self, display_name: str) -> RedirectOutcome:
        t = self.timings
        self.logger.info("   填入名称...")
        self.page.wait_for_selector(DISPLAY_NAME_INPUT, t.selector_timeout)
        self.page.type_text(DISPLAY_NAME_INPUT, display_name)
        self.sleep(t.after_display_name)

        self.logger.info("   点击创建按钮...")
        self.page.click(ONBOARD_SUBMIT)
        self.sleep(t.after_onboard_submit)

        url = self._poll_url(lambda u: CID_MARKER in u and ONBOARDING_MARKER not in u)
        if url is None:
            return RedirectOutcome.REDIRECT_TIMED_OUT_ON_ONBOARDING
        return RedirectOutcome.ONBOARDED

    def extract_tokens(self) -> SessionTokens:
        self.logger.info("   获取 token...")
        url = self.page.current_url()
        try:
            tokens = extract_session_tokens(self.page.cookies(), url)
        except IncompleteTokenError as e:
            self.logger.warning("   Token 获取不完整, 缺少: %s, 当前 URL: %s", ", ".join(e.missing), url)
            raise
        self.logger.info(
            "   登录成功，获取到 4 个 token: csesidx=%s team_id=%s secure_c_ses=%s host_c_oses=%s",
            mask(tokens.csesidx),
            tokens.team_id,
            mask(tokens.secure_c_ses),
            mask(tokens.host_c_oses),
        )
        return tokens


class PlaywrightPage:
    """BrowserPage over a Playwright page and its context."""

    def __init__(self, page: Any, context: Any):
        self.page = page
        self.context = context

    def goto(self, url: str) -> None:
        self.page.goto(url)

    def wait_for_selector(self, selector: str, timeout: float) -> None:
        self.page.wait_for_selector(selector, timeout=timeout * 1000)

    def type_text(self, selector: str, text: str, delay_ms: int = 0) -> None:
        self.page.locator(selector).press_sequentially(text, delay=delay_ms)

    def clear(self, selector: str) -> None:
        self.page.fill(selector, "")

    def click(self, selector: str) -> None:
        self.page.click(selector)

    def current_url(self) -> str:
        return self.page.url

    def cookies(self) -> List[Dict[str, Any]]:
        return list(self.context.cookies())


def build_launch_args(proxy: ProxyConfig) -> List[str]:
    args = list(LAUNCH_ARGS)
    if proxy.enabled:
        args.append("--ignore-certificate-errors")
    return args


def build_proxy_settings(proxy: ProxyConfig) -> Optional[Dict[str, str]]:
    """Playwright proxy option; credentials only for HTTP proxies."""
    if not proxy.enabled:
        return None
    settings = {"server": proxy.server_url(), "bypass": "<-loopback>"}
    if not proxy.is_socks and proxy.has_credentials:
        settings["username"] = proxy.username
        settings["password"] = proxy.password
    return settings


def prepare_profile_dir(root: Optional[Path] = None) -> Path:
    base = Path(root) if root is not None else Path(tempfile.gettempdir())
    profile_dir = base / f"chrome_user_data_{int(time.time() * 1000)}"
    if profile_dir.exists():
        for child in profile_dir.iterdir():
            if child.is_dir():
                shutil.rmtree(child, ignore_errors=True)
            else:
                child.unlink()
    else:
        profile_dir.mkdir(parents=True)
    return profile_dir


class BrowserLauncher:
    def __init__(
        self,
        headless: bool = True,
        profile_root: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.headless = headless
        self.profile_root = profile_root
        self.logger = get_logger(logger)

    def launch_options(self, proxy: ProxyConfig, user_agent: str) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "headless": self.headless,
            "args": build_launch_args(proxy),
            "ignore_https_errors": True,
            "user_agent": user_agent,
            "viewport": {"width": 1920, "height": 1080},
            "locale": "zh-CN",
        }
        proxy_settings = build_proxy_settings(proxy)
        if proxy_settings:
            options["proxy"] = proxy_settings
            self.logger.info("   已添加代理参数: %s (绕过: %s)", proxy_settings["server"], proxy_settings["bypass"])
            if "username" in proxy_settings:
                self.logger.info("   代理认证已设置")
        return options

    @contextmanager
    def open(self, proxy: ProxyConfig) -> Iterator[PlaywrightPage]:
        profile_dir = prepare_profile_dir(self.profile_root)
        try:
            self.logger.info("   已创建用户数据目录: %s", profile_dir)
            user_agent = random.choice(USER_AGENTS)
            self.logger.info("   使用随机 UserAgent: %s", user_agent)

            pw = sync_playwright().start()
            try:
                context = None
                try:
                    self.logger.info("   启动浏览器...")
                    context = pw.chromium.launch_persistent_context(
                        str(profile_dir), **self.launch_options(proxy, user_agent)
                    )
                    page = context.pages[0] if context.pages else context.new_page()
                    yield PlaywrightPage(page, context)
                finally:
                    if context is not None:
                        try:
                            context.close()
                        except Exception as e:
                            self.logger.warning("   关闭浏览器失败: %s", e)
            finally:
                try:
                    pw.stop()
                except Exception as e:
                    self.logger.warning("   停止 Playwright 失败: %s", e)
        finally:
            shutil.rmtree(profile_dir, ignore_errors=True)


class BrowserSessionDriver:
    def __init__(
        self,
        mail_client: Any,
        store: ConfigStore,
        launcher: Optional[BrowserLauncher] = None,
        timings: Optional[FlowTimings] = None,
        probe_proxy_first: bool = True,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.mail_client = mail_client
        self.store = store
        self.logger = get_logger(logger)
        self.launcher = launcher or BrowserLauncher(logger=self.logger)
        self.timings = timings or FlowTimings()
        self.probe_proxy_first = probe_proxy_first
        self.sleep = sleep

    def login(self, account: Dict[str, Any], mail_token: str) -> LoginResult:
        email = str(account.get("email") or "")
        account_id = account.get("accountId")
        self.logger.info("正在登录子号: %s (账号ID: %s)", email, account_id)

        proxy = resolve_proxy(self.store, self.logger)
        self.logger.info("   代理状态: %s", "已启用" if proxy.enabled else "未启用")
        if proxy.enabled and self.probe_proxy_first:
            if not probe_proxy(proxy, logger=self.logger):
                self.logger.warning("   代理验证未通过，仍按配置使用代理")

        with self.launcher.open(proxy) as page:
            flow = LoginFlow(
                page,
                fetch_code=lambda: self.mail_client.wait_for_login_code(mail_token, account_id),
                timings=self.timings,
                logger=self.logger,
                sleep=self.sleep,
            )
            result = flow.run(email)
        self.logger.info("   子号 %s 登录完成 (%s)", email, result.outcome.value)
        return result
