"""
Data model shared by the mail, browser, refresh and pool modules.

Account records (mail accounts and business accounts) stay plain dicts
because they are round-tripped through the YAML documents with whatever
extra fields the mail provider returned. Everything the core computes
is a dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

TOKEN_FIELDS = ("csesidx", "host_c_oses", "secure_c_ses", "team_id")
NO_TOKENS_REASON = "没有tokens信息"


@dataclass
class ProxyConfig:
    """Proxy settings snapshot, read once per operation."""
    enabled: bool = False
    type: str = "http"
    url: str = "127.0.0.1"
    port: int = 8080
    username: str = ""
    password: str = ""

    @property
    def is_socks(self) -> bool:
        return self.type.lower() == "socks5"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def server_url(self) -> str:
        """Proxy server in the form the browser expects (never carries credentials)."""
        scheme = "socks5" if self.is_socks else self.type
        return f"{scheme}://{self.url}:{self.port}"

    def requests_url(self) -> str:
        # socks5h resolves DNS on the proxy side, which is what a browser does too
        scheme = "socks5h" if self.is_socks else self.type
        if self.has_credentials:
            auth = f"{quote(self.username, safe='')}:{quote(self.password, safe='')}@"
        else:
            auth = ""
        return f"{scheme}://{auth}{self.url}:{self.port}"


@dataclass
class MailCredentials:
    account: str
    password: str
    default_domain: str = ""
    api_url: str = ""

    @property
    def login_email(self) -> str:
        if self.default_domain and "@" not in self.account:
            return f"{self.account}{self.default_domain}"
        return self.account


@dataclass
class SessionTokens:
    csesidx: str
    host_c_oses: str
    secure_c_ses: str
    team_id: str

    def to_dict(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in TOKEN_FIELDS}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["SessionTokens"]:
        """Return tokens only when all four fields are present and non-empty."""
        if not isinstance(data, Mapping):
            return None
        values = {name: str(data.get(name) or "") for name in TOKEN_FIELDS}
        if not all(values.values()):
            return None
        return cls(**values)


def has_complete_tokens(account: Mapping[str, Any]) -> bool:
    return SessionTokens.from_dict(account.get("tokens")) is not None


def is_syncable(account: Mapping[str, Any]) -> bool:
    return has_complete_tokens(account) and not account.get("skipReason")


@dataclass
class VerificationInfo:
    code: str
    time: Any = None
    subject: str = ""
    sender: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "time": self.time, "subject": self.subject, "from": self.sender}


@dataclass
class RefreshResult:
    success_count: int = 0
    failure_count: int = 0
    outcomes: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "outcomes": dict(self.outcomes),
        }


@dataclass
class PoolUpdateResult:
    added_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    deleted_count: int = 0
    total_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "addedCount": self.added_count,
            "skippedCount": self.skipped_count,
            "failedCount": self.failed_count,
            "deletedCount": self.deleted_count,
            "totalCount": self.total_count,
        }


@dataclass
class CleanResult:
    valid_count: int = 0
    invalid_count: int = 0
    delete_failed_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "validCount": self.valid_count,
            "invalidCount": self.invalid_count,
            "deleteFailedCount": self.delete_failed_count,
        }


@dataclass
class BatchCreateResult:
    created: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "createdCount": len(self.created),
            "failedCount": len(self.errors),
            "accounts": list(self.created),
            "errors": list(self.errors),
        }
