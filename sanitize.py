import re


MAX_LINES = 40

REDACT_PATTERNS = [
    (re.compile(r"(authorization\s*[:=]\s*)\S+(\s+\S+)?", re.IGNORECASE), "authorization"),
    (re.compile(r"bearer\s+[a-zA-Z0-9\-_.]+", re.IGNORECASE), "bearer"),
    (re.compile(r"(jwt|token)\s*[=:]\s*\S+", re.IGNORECASE), "token"),
    (re.compile(r"eyJ[a-zA-Z0-9\-_]+\.[a-zA-Z0-9\-_]+\.[a-zA-Z0-9\-_]*"), "jwt"),
]


def sanitize_output(raw: str, max_lines: int = MAX_LINES) -> str:
    """
    Make an error diagnostic safe to print.
    Credentials are redacted and long bodies (HTML error pages, stack
    traces from the API) are truncated.
    """
    text = raw

    for regex, label in REDACT_PATTERNS:
        text = regex.sub(f"[REDACTED: {label}]", text)

    lines = text.splitlines()
    if len(lines) > max_lines:
        lines = lines[:max_lines]
        lines.append("[Output truncated]")

    return "\n".join(lines)
