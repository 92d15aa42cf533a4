from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Optional

from models import VerificationInfo

BUSINESS_CODE_SUBJECT = "Gemini Business 验证码"

# "您的一次性验证码为：" then a blank line, then the code; spacing varies between mail renderers
BUSINESS_CODE_RE = re.compile(r"您的一次性验证码为：[ \t]*\r?\n\s*\r?\n\s*([A-Z0-9]{6})(?![A-Z0-9])", re.IGNORECASE)
MAIL_CODE_RE = re.compile(r"(?:代码为|code is|código es)\s*(\d{6})(?!\d)", re.IGNORECASE)


def extract_business_code(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    m = BUSINESS_CODE_RE.search(text)
    return m.group(1) if m else None


def extract_mail_code(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    m = MAIL_CODE_RE.search(text)
    return m.group(1) if m else None


def find_mail_verification(emails: Iterable[Dict[str, Any]]) -> Optional[VerificationInfo]:
    """First email, newest first, whose subject or body carries a verification code."""
    for email in emails or []:
        if not isinstance(email, dict):
            continue
        code = extract_mail_code(str(email.get("subject") or "")) or extract_mail_code(str(email.get("text") or ""))
        if code:
            return VerificationInfo(
                code=code,
                time=email.get("createTime"),
                subject=str(email.get("subject") or ""),
                sender=str(email.get("name") or email.get("sendEmail") or ""),
            )
    return None
