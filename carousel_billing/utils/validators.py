import re

# Simple, pragmatic patterns
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", val).strip()
    if not s:
        return None
    return s[:max_len]

def normalize_email(val: str | None) -> str | None:
    """Lowercased, trimmed email or None when it does not look like one."""
    s = clean_str(val, max_len=320)
    if not s:
        return None
    s = s.lower()
    if not _EMAIL_RE.match(s):
        return None
    return s
