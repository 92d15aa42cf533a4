"""
Shared test fixtures for the business pool manager tests
"""

import json
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import pytest
import requests
import yaml

from config_store import ConfigStore


# === Fake HTTP layer ===

class FakeResponse:
    """Minimal stand-in for requests.Response"""
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text


def envelope(data: Any = None, code: int = 200, message: str = "ok") -> FakeResponse:
    """Mail provider {code, message, data} response"""
    return FakeResponse(200, {"code": code, "message": message, "data": data})


class FakeSession:
    """Routes (METHOD, path) to a response, a queue of responses or a callable"""
    def __init__(self, routes: Optional[Dict[tuple, Any]] = None):
        self.routes = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []
        self.proxies: Dict[str, str] = {}

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        path = urlparse(url).path
        call = {"method": method.upper(), "url": url, "path": path, **kwargs}
        self.calls.append(call)
        route = self.routes.get((method.upper(), path))
        if route is None:
            return FakeResponse(404, {"error": "no route"})
        if isinstance(route, Exception):
            raise route
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        if callable(route):
            return route(call)
        return route

    def get(self, url: str, **kwargs) -> FakeResponse:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs) -> FakeResponse:
        return self.request("DELETE", url, **kwargs)

    def calls_to(self, method: str, path: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method and c["path"] == path]


class RaisingSession(FakeSession):
    """Every request fails at the transport level"""
    def request(self, method: str, url: str, **kwargs):
        self.calls.append({"method": method.upper(), "url": url})
        raise requests.ConnectionError("connection refused")


# === Fake browser page ===

class FakePage:
    """BrowserPage that replays a scripted URL sequence and records every action"""
    def __init__(self, urls: List[str], cookies: Optional[List[Dict[str, Any]]] = None):
        self._urls = list(urls)
        self._url_index = 0
        self._cookies = list(cookies or [])
        self.actions: List[tuple] = []

    def goto(self, url: str) -> None:
        self.actions.append(("goto", url))

    def wait_for_selector(self, selector: str, timeout: float) -> None:
        self.actions.append(("wait", selector))

    def type_text(self, selector: str, text: str, delay_ms: int = 0) -> None:
        self.actions.append(("type", selector, text, delay_ms))

    def clear(self, selector: str) -> None:
        self.actions.append(("clear", selector))

    def click(self, selector: str) -> None:
        self.actions.append(("click", selector))

    def current_url(self) -> str:
        url = self._urls[min(self._url_index, len(self._urls) - 1)]
        self._url_index += 1
        return url

    def cookies(self) -> List[Dict[str, Any]]:
        return list(self._cookies)


class SleepRecorder:
    """Replaces time.sleep and remembers every requested delay"""
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# === Data helpers ===

def make_tokens(suffix: str = "1") -> Dict[str, str]:
    return {
        "csesidx": f"idx-{suffix}",
        "host_c_oses": f"oses-{suffix}",
        "secure_c_ses": f"ses-{suffix}",
        "team_id": f"team-{suffix}",
    }


def make_child(account_id: int, email: str, tokens: Optional[Dict[str, str]] = None, **extra) -> Dict[str, Any]:
    child = {"email": email, "accountId": account_id, "name": email.split("@")[0], "status": 0}
    if tokens is not None:
        child["tokens"] = tokens
    child.update(extra)
    return child


def session_cookies(secure: str = "ses-value", host: str = "oses-value") -> List[Dict[str, Any]]:
    return [
        {"name": "__Secure-C_SES", "value": secure},
        {"name": "__Host-C_OSES", "value": host},
        {"name": "NID", "value": "unrelated"},
    ]


def write_yaml(path, doc: Dict[str, Any]) -> None:
    path.write_text(yaml.safe_dump(doc, allow_unicode=True, sort_keys=False), encoding="utf-8")


def read_yaml(path) -> Dict[str, Any]:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


# === Fixtures ===

@pytest.fixture
def temp_mail_doc() -> Dict[str, Any]:
    """temp-mail.yaml with a parent and three children"""
    return {
        "emailApiUrl": "https://mail.test",
        "defaultDomain": "@mail.test",
        "credentials": {"account": "admin", "password": "secret"},
        "accounts": {
            "parent": make_child(1, "admin@mail.test"),
            "children": [
                make_child(2, "alpha@mail.test"),
                make_child(3, "bravo@mail.test"),
                make_child(4, "charlie@mail.test"),
            ],
            "lastUpdated": "",
        },
    }


@pytest.fixture
def gemini_mail_doc() -> Dict[str, Any]:
    """gemini-mail.yaml with three children holding complete tokens"""
    return {
        "poolApiUrl": "https://pool.test",
        "password": "pool-secret",
        "accounts": {
            "parent": make_child(1, "admin@mail.test"),
            "children": [
                make_child(2, "alpha@mail.test", make_tokens("a")),
                make_child(3, "bravo@mail.test", make_tokens("b")),
                make_child(4, "charlie@mail.test", make_tokens("c")),
            ],
        },
    }


@pytest.fixture
def config_dir(tmp_path, temp_mail_doc, gemini_mail_doc):
    """Config directory with temp-mail.yaml and gemini-mail.yaml (no proxy.yaml)"""
    directory = tmp_path / "config"
    directory.mkdir()
    write_yaml(directory / "temp-mail.yaml", temp_mail_doc)
    write_yaml(directory / "gemini-mail.yaml", gemini_mail_doc)
    return directory


@pytest.fixture
def store(config_dir) -> ConfigStore:
    return ConfigStore(config_dir)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()

