"""
Tests for the browser login flow, token extraction and launch options
"""

from contextlib import contextmanager

import pytest

import browser_session
from browser_session import (
    CODE_INPUT,
    DISPLAY_NAME_INPUT,
    EMAIL_INPUT,
    LOGIN_BUTTON,
    LOGIN_URL,
    ONBOARD_SUBMIT,
    VERIFY_BUTTON,
    BrowserLauncher,
    BrowserSessionDriver,
    FlowTimings,
    LoginFlow,
    PlaywrightPage,
    RedirectOutcome,
    build_launch_args,
    build_proxy_settings,
    extract_session_tokens,
    prepare_profile_dir,
)
from conftest import FakePage, session_cookies, write_yaml
from errors import IncompleteTokenError
from models import ProxyConfig

VERIFY_URL = "https://accountverification.business.gemini.google/v1/verify-oob-code"
WORKSPACE_URL = "https://business.gemini.google/home/cid/team-42?csesidx=987654&mods"
ONBOARDING_URL = "https://business.gemini.google/admin/create?csesidx=987654"


def make_flow(page, sleep, code="AB12CD"):
    fetched = []

    def fetch_code():
        fetched.append(True)
        return code

    flow = LoginFlow(page, fetch_code=fetch_code, timings=FlowTimings.instant(), sleep=sleep)
    return flow, fetched


# === Token extraction ===

class TestExtractSessionTokens:
    """Tests for reading the four tokens from cookies and URL"""

    def test_all_present(self):
        tokens = extract_session_tokens(session_cookies("ses", "oses"), WORKSPACE_URL)

        assert tokens.to_dict() == {
            "csesidx": "987654",
            "host_c_oses": "oses",
            "secure_c_ses": "ses",
            "team_id": "team-42",
        }

    @pytest.mark.parametrize("cookies,url,missing", [
        (session_cookies(secure=""), WORKSPACE_URL, "secure_c_ses"),
        (session_cookies(host=""), WORKSPACE_URL, "host_c_oses"),
        (session_cookies(), "https://business.gemini.google/home/cid/team-42", "csesidx"),
        (session_cookies(), "https://business.gemini.google/home?csesidx=987654", "team_id"),
    ])
    def test_any_missing_field_fails(self, cookies, url, missing):
        """No partial token set is ever returned"""
        with pytest.raises(IncompleteTokenError) as exc:
            extract_session_tokens(cookies, url)
        assert exc.value.missing == [missing]

    def test_nothing_present(self):
        with pytest.raises(IncompleteTokenError) as exc:
            extract_session_tokens([], "")
        assert exc.value.missing == ["csesidx", "host_c_oses", "secure_c_ses", "team_id"]


# === Login flow ===

class TestLoginFlow:
    """Tests for the login state machine against a scripted page"""

    def test_direct_workspace_redirect(self, sleep):
        page = FakePage([VERIFY_URL, VERIFY_URL, WORKSPACE_URL], cookies=session_cookies())
        flow, fetched = make_flow(page, sleep)

        result = flow.run("alpha@mail.test")

        assert result.outcome is RedirectOutcome.COMPLETED
        assert result.tokens.team_id == "team-42"
        assert result.final_url == WORKSPACE_URL
        assert fetched == [True]
        assert ("type", DISPLAY_NAME_INPUT, "alpha@mail.test", 0) not in page.actions
        # two polls before the workspace URL showed up
        assert sleep.calls.count(3.0) == 2

    def test_step_order(self, sleep):
        """Email, continue, code input, typed code, verify, in that order"""
        page = FakePage([WORKSPACE_URL], cookies=session_cookies())
        flow, _ = make_flow(page, sleep, code="Q1W2E3")

        flow.run("alpha@mail.test")

        assert page.actions == [
            ("goto", LOGIN_URL),
            ("wait", EMAIL_INPUT),
            ("type", EMAIL_INPUT, "alpha@mail.test", 0),
            ("click", LOGIN_BUTTON),
            ("wait", CODE_INPUT),
            ("click", CODE_INPUT),
            ("clear", CODE_INPUT),
            ("type", CODE_INPUT, "Q1W2E3", 0),
            ("click", VERIFY_BUTTON),
        ]

    def test_onboarding_branch(self, sleep):
        page = FakePage([ONBOARDING_URL, ONBOARDING_URL, WORKSPACE_URL], cookies=session_cookies())
        flow, _ = make_flow(page, sleep)

        result = flow.run("bravo@mail.test")

        assert result.outcome is RedirectOutcome.ONBOARDED
        assert ("wait", DISPLAY_NAME_INPUT) in page.actions
        assert ("type", DISPLAY_NAME_INPUT, "bravo@mail.test", 0) in page.actions
        assert page.actions[-1] == ("click", ONBOARD_SUBMIT)
        assert result.tokens.csesidx == "987654"

    def test_redirect_timeout(self, sleep):
        """Neither path shows up: 60 s of 3 s polls then a named timeout outcome"""
        page = FakePage([VERIFY_URL])
        flow, _ = make_flow(page, sleep)

        assert flow.await_redirect() is RedirectOutcome.REDIRECT_TIMED_OUT
        assert sleep.calls == [3.0] * 20

    def test_onboarding_timeout(self, sleep):
        page = FakePage([ONBOARDING_URL])
        flow, _ = make_flow(page, sleep)

        assert flow.complete_onboarding("bravo@mail.test") is RedirectOutcome.REDIRECT_TIMED_OUT_ON_ONBOARDING

    def test_timeout_still_attempts_extraction(self, sleep):
        """A timed out redirect goes on to extraction, which fails without the workspace URL"""
        page = FakePage([ONBOARDING_URL], cookies=session_cookies())
        flow, _ = make_flow(page, sleep)

        with pytest.raises(IncompleteTokenError) as exc:
            flow.run("bravo@mail.test")
        assert exc.value.missing == ["team_id"]

    def test_code_fetch_failure_propagates(self, sleep):
        page = FakePage([WORKSPACE_URL])

        def no_code():
            raise RuntimeError("mail down")

        flow = LoginFlow(page, fetch_code=no_code, timings=FlowTimings.instant(), sleep=sleep)
        with pytest.raises(RuntimeError):
            flow.run("alpha@mail.test")
        assert ("click", VERIFY_BUTTON) not in page.actions


# === Launch options ===

class TestLaunchOptions:
    """Tests for browser flags and proxy settings"""

    def test_args_without_proxy(self):
        args = build_launch_args(ProxyConfig())
        assert "--disable-blink-features=AutomationControlled" in args
        assert "--ignore-certificate-errors" not in args

    def test_args_with_proxy(self):
        assert "--ignore-certificate-errors" in build_launch_args(ProxyConfig(enabled=True))

    def test_http_proxy_with_credentials(self):
        proxy = ProxyConfig(enabled=True, type="http", url="10.0.0.1", port=3128, username="u", password="p")
        assert build_proxy_settings(proxy) == {
            "server": "http://10.0.0.1:3128",
            "bypass": "<-loopback>",
            "username": "u",
            "password": "p",
        }

    def test_socks_proxy_never_carries_credentials(self):
        proxy = ProxyConfig(enabled=True, type="socks5", url="10.0.0.1", port=1080, username="u", password="p")
        assert build_proxy_settings(proxy) == {"server": "socks5://10.0.0.1:1080", "bypass": "<-loopback>"}

    def test_disabled_proxy(self):
        assert build_proxy_settings(ProxyConfig(username="u", password="p")) is None

    def test_launch_options(self):
        options = BrowserLauncher(headless=True).launch_options(ProxyConfig(enabled=True), "UA/1.0")
        assert options["user_agent"] == "UA/1.0"
        assert options["headless"] is True
        assert options["proxy"]["server"] == "http://127.0.0.1:8080"

    def test_profile_dir_is_fresh(self, tmp_path):
        profile = prepare_profile_dir(tmp_path)
        assert profile.is_dir()
        assert profile.parent == tmp_path
        assert profile.name.startswith("chrome_user_data_")
        assert list(profile.iterdir()) == []


# === Driver ===

class FakeLauncher:
    """Launcher that hands out a FakePage and records the proxy it was opened with"""
    def __init__(self, page):
        self.page = page
        self.opened_with = []
        self.closed = False

    @contextmanager
    def open(self, proxy):
        self.opened_with.append(proxy)
        try:
            yield self.page
        finally:
            self.closed = True


class FakeMail:
    def __init__(self):
        self.requests = []

    def wait_for_login_code(self, token, account_id):
        self.requests.append((token, account_id))
        return "ZZ99YY"


class TestBrowserSessionDriver:
    """Tests for one account login around the flow"""

    def test_login_uses_mail_token_and_account(self, store, sleep):
        page = FakePage([WORKSPACE_URL], cookies=session_cookies())
        launcher = FakeLauncher(page)
        mail = FakeMail()
        driver = BrowserSessionDriver(mail, store, launcher=launcher, timings=FlowTimings.instant(), sleep=sleep)

        result = driver.login({"email": "alpha@mail.test", "accountId": 2}, "mail-token")

        assert result.outcome is RedirectOutcome.COMPLETED
        assert mail.requests == [("mail-token", 2)]
        assert ("type", CODE_INPUT, "ZZ99YY", 0) in page.actions
        assert launcher.opened_with[0].enabled is False
        assert launcher.closed

    def test_launcher_released_on_failure(self, store, sleep):
        launcher = FakeLauncher(FakePage([VERIFY_URL]))
        driver = BrowserSessionDriver(FakeMail(), store, launcher=launcher, timings=FlowTimings.instant(), sleep=sleep)

        with pytest.raises(IncompleteTokenError):
            driver.login({"email": "alpha@mail.test", "accountId": 2}, "mail-token")
        assert launcher.closed

    def test_proxy_passed_to_launcher(self, store, config_dir, sleep):
        write_yaml(config_dir / "proxy.yaml", {"proxy": {"enabled": True, "type": "http", "url": "1.2.3.4", "port": 8888}})
        launcher = FakeLauncher(FakePage([WORKSPACE_URL], cookies=session_cookies()))
        driver = BrowserSessionDriver(
            FakeMail(), store, launcher=launcher, timings=FlowTimings.instant(), probe_proxy_first=False, sleep=sleep
        )

        driver.login({"email": "alpha@mail.test", "accountId": 2}, "mail-token")

        proxy = launcher.opened_with[0]
        assert proxy.enabled
        assert proxy.server_url() == "http://1.2.3.4:8888"


# === Real launcher teardown ===

class FakeContext:
    def __init__(self, fail_close=False):
        self.pages = []
        self.closed = False
        self.fail_close = fail_close

    def new_page(self):
        return object()

    def cookies(self):
        return []

    def close(self):
        self.closed = True
        if self.fail_close:
            raise RuntimeError("close failed")


class FakePlaywright:
    """Stands in for both sync_playwright() and the started Playwright object"""
    def __init__(self, fail_start=False, fail_launch=False, fail_stop=False, fail_close=False):
        self.fail_start = fail_start
        self.fail_launch = fail_launch
        self.fail_stop = fail_stop
        self.context = FakeContext(fail_close=fail_close)
        self.launched_with = []
        self.stopped = False
        self.chromium = self

    def __call__(self):
        return self

    def start(self):
        if self.fail_start:
            raise RuntimeError("start failed")
        return self

    def launch_persistent_context(self, user_data_dir, **options):
        self.launched_with.append((user_data_dir, options))
        if self.fail_launch:
            raise RuntimeError("launch failed")
        return self.context

    def stop(self):
        self.stopped = True
        if self.fail_stop:
            raise RuntimeError("stop failed")


class TestBrowserLauncherTeardown:
    """The profile directory is removed and the browser released on every exit path"""

    def open_with(self, monkeypatch, tmp_path, fake):
        monkeypatch.setattr(browser_session, "sync_playwright", fake)
        return BrowserLauncher(profile_root=tmp_path).open(ProxyConfig())

    def test_normal_exit(self, monkeypatch, tmp_path):
        fake = FakePlaywright()
        with self.open_with(monkeypatch, tmp_path, fake) as page:
            assert isinstance(page, PlaywrightPage)
            profile_dir = fake.launched_with[0][0]
            assert tmp_path.joinpath(profile_dir).is_dir()

        assert fake.context.closed
        assert fake.stopped
        assert list(tmp_path.iterdir()) == []

    def test_start_failure(self, monkeypatch, tmp_path):
        with pytest.raises(RuntimeError, match="start failed"):
            with self.open_with(monkeypatch, tmp_path, FakePlaywright(fail_start=True)):
                pass
        assert list(tmp_path.iterdir()) == []

    def test_launch_error_survives_stop_failure(self, monkeypatch, tmp_path):
        fake = FakePlaywright(fail_launch=True, fail_stop=True)
        with pytest.raises(RuntimeError, match="launch failed"):
            with self.open_with(monkeypatch, tmp_path, fake):
                pass
        assert fake.stopped
        assert list(tmp_path.iterdir()) == []

    def test_flow_error_survives_close_failure(self, monkeypatch, tmp_path):
        fake = FakePlaywright(fail_close=True, fail_stop=True)
        with pytest.raises(IncompleteTokenError):
            with self.open_with(monkeypatch, tmp_path, fake):
                raise IncompleteTokenError(["team_id"])
        assert fake.context.closed
        assert fake.stopped
        assert list(tmp_path.iterdir()) == []


# === Default timings ===

class TestDefaultTimings:
    """The production delays, recorded instead of slept"""

    def test_default_waits_and_keystroke_delay(self, sleep):
        page = FakePage([WORKSPACE_URL], cookies=session_cookies())
        flow = LoginFlow(page, fetch_code=lambda: "AB12CD", sleep=sleep)

        flow.run("alpha@mail.test")

        assert ("type", CODE_INPUT, "AB12CD", 100) in page.actions
        # settle, after email, after continue, mail grace, code focus, after code, after verify, final settle
        assert sleep.calls == [3.0, 2.0, 3.0, 10.0, 0.5, 1.0, 3.0, 10.0]

    def test_redirect_bound(self):
        timings = FlowTimings()
        assert timings.redirect_timeout == 60.0
        assert timings.redirect_poll == 3.0

    @pytest.mark.parametrize("poll", [0, -1])
    def test_non_positive_poll_rejected(self, poll):
        """A zero poll interval would never reach the redirect timeout"""
        with pytest.raises(ValueError):
            FlowTimings(redirect_poll=poll)
