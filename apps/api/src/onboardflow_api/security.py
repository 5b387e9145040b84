from __future__ import annotations

import hmac
import re

_SENSITIVE_ASSIGNMENT_RE = re.compile(
    r"(?i)\b(password|passwd|token|secret|api[_-]?key)\b(\"?\s*[:=]\s*\"?)([^\s,;\"]+)"
)
_SENSITIVE_QUERY_RE = re.compile(r"(?i)([?&](?:token|key|password|secret)=)([^&\s]+)")
# Apps Script style deployment ids act as bearer credentials for the sync endpoint.
_DEPLOYMENT_PATH_RE = re.compile(r"(/macros/s/)([A-Za-z0-9_-]{16,})")


def redact_sensitive_text(value: str | None) -> str | None:
    if value is None:
        return None

    redacted = _SENSITIVE_ASSIGNMENT_RE.sub(r"\1\2[REDACTED]", value)
    redacted = _SENSITIVE_QUERY_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _DEPLOYMENT_PATH_RE.sub(r"\1[REDACTED]", redacted)
    return redacted


def passwords_match(stored: str | None, supplied: str | None) -> bool:
    """Compare in constant time; members without a stored password accept any input."""
    if not stored:
        return True
    return hmac.compare_digest(stored.encode("utf-8"), (supplied or "").encode("utf-8"))
