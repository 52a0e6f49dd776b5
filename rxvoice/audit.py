"""
PHI-aware audit trail.

Everything that reaches the audit file passes through redaction first: free text is
scrubbed for phone numbers, dates of birth, SSNs and emails, and known identity keys
are blanked regardless of their value.
"""

from __future__ import annotations

import hashlib
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .logging import NDJSONLogger, RichLogger
from .settings import settings

_PHONE_RE = re.compile(r"(\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4})")
_DOB_RE = re.compile(r"\b(0?[1-9]|1[0-2])[/\-](0?[1-9]|[12]\d|3[01])[/\-](19|20)\d{2}\b")
_SSN_RE = re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

_NAME_FIELD_RE = re.compile(r"^[a-zA-Z\s\-']{2,50}$")
_DOB_FIELD_RE = re.compile(r"^(0?[1-9]|1[0-2])[/\-](0?[1-9]|[12]\d|3[01])[/\-](19|20)\d{2}$")

_BLANKED_KEYS = {"phone", "phonenumber", "dob", "dateofbirth"}


def redact_phi(text: str) -> str:
    text = _PHONE_RE.sub("[PHONE_REDACTED]", text)
    text = _DOB_RE.sub("[DOB_REDACTED]", text)
    text = _SSN_RE.sub("[SSN_REDACTED]", text)
    text = _EMAIL_RE.sub("[EMAIL_REDACTED]", text)
    return text


def hash_pii(value: str, salt: str = settings.audit_salt) -> str:
    """One-way hash for identifiers that must be matched but never stored."""
    return hashlib.sha256((value.lower().strip() + salt).encode("utf-8")).hexdigest()


def mask_phone_number(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    if len(digits) >= 4:
        return f"****{digits[-4:]}"
    return "[PHONE_MASKED]"


def redact_details(obj: Any) -> Any:
    if isinstance(obj, str):
        return redact_phi(obj)
    if isinstance(obj, (list, tuple)):
        return [redact_details(x) for x in obj]
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for key, value in obj.items():
            k = str(key).lower()
            if k in _BLANKED_KEYS:
                out[key] = "[REDACTED]"
            elif "name" in k:
                out[key] = "[NAME_REDACTED]"
            else:
                out[key] = redact_details(value)
        return out
    return obj


def validate_phi_fields(
    name: Optional[str] = None, dob: Optional[str] = None, phone: Optional[str] = None
) -> Tuple[bool, List[str]]:
    errors: List[str] = []

    if name and not _NAME_FIELD_RE.match(name.strip()):
        errors.append("Name must contain only letters, spaces, hyphens, and apostrophes (2-50 characters)")

    if dob:
        if not _DOB_FIELD_RE.match(dob):
            errors.append("Date of birth must be in MM/DD/YYYY format")
        else:
            try:
                born = datetime.strptime(dob.replace("-", "/"), "%m/%d/%Y")
                age = datetime.now().year - born.year
                if age < 0 or age > 150:
                    errors.append("Date of birth must represent a valid age (0-150 years)")
            except ValueError:
                errors.append("Date of birth must be a real calendar date")

    if phone and len(re.sub(r"\D", "", phone)) != 10:
        errors.append("Phone number must be 10 digits")

    return not errors, errors


class AuditLogger:
    """Append-only, redacted audit records. Never raises into the caller."""

    def __init__(self, path: Optional[str] = None):
        self._sink = NDJSONLogger(path or settings.audit_file)

    @property
    def path(self):
        return self._sink.path

    def log_event(self, session_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> None:
        try:
            record = {
                "evt": "audit",
                "ts": time.time(),
                "session_id": session_id,
                "action": action,
                "details": redact_details(details or {}),
            }
            self._sink.write(record)
        except Exception as e:
            print(RichLogger.line(RichLogger.warning(f"audit log failed ({action}): {e!r}")))
