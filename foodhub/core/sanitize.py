"""Text sanitization and attack-pattern detection.

``sanitize_text`` is applied by request schemas to free-text fields.
``analyze_input`` is used by the input sanitization middleware to classify a
single request value; it returns one threat dict per matching category.
"""

import base64
import binascii
import html
import re
from typing import Dict, List
from urllib.parse import unquote

SEVERITY_CRITICAL = "critical"
SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

SQL_INJECTION_PATTERNS = [
    re.compile(r"(\b(select|insert|update|delete|drop|create|alter|exec|execute|union|script)\b)", re.I),
    re.compile(r"(\b(or|and)\s+\d+\s*=\s*\d+)", re.I),
    re.compile(r"('|\")(\s*)(or|and)(\s*)('|\")", re.I),
    re.compile(r"(\bor\b\s+\b1\s*=\s*1\b)", re.I),
    re.compile(r"(\bunion\b.*\bselect\b)", re.I),
    re.compile(r"(/\*.*\*/)", re.I),
    re.compile(r"(\b(concat|char|ascii|substring|length|database|version|user|table_name)\s*\()", re.I),
    re.compile(r"(';\s*(drop|delete|insert|update))", re.I),
]

XSS_PATTERNS = [
    re.compile(r"<script[^>]*>.*?</script>", re.I | re.S),
    re.compile(r"<iframe[^>]*>.*?</iframe>", re.I | re.S),
    re.compile(r"javascript:", re.I),
    re.compile(
        r"on(click|mouseover|error|load|mouseout|focus|blur|change|submit|reset|select"
        r"|unload|resize|scroll|keydown|keyup|keypress)\s*=",
        re.I,
    ),
    re.compile(r"<[^>]*?(?:onclick|onmouseover|onerror|onload|onmouseout)[^>]*>", re.I),
    re.compile(r"eval\s*\(", re.I),
    re.compile(r"expression\s*\(", re.I),
    re.compile(r"vbscript:", re.I),
    re.compile(r"data:text/html", re.I),
    re.compile(r"<object[^>]*>.*?</object>", re.I | re.S),
    re.compile(r"<embed[^>]*>.*?</embed>", re.I | re.S),
    re.compile(r"<applet[^>]*>.*?</applet>", re.I | re.S),
]

PATH_TRAVERSAL_PATTERNS = [
    re.compile(r"\.\./"),
    re.compile(r"\.\.\\"),
    re.compile(r"%2e%2e%2f", re.I),
    re.compile(r"%2e%2e\\", re.I),
    re.compile(r"\.\.%5c", re.I),
    re.compile(r"\.\.%2f", re.I),
    re.compile(r"/etc/passwd"),
    re.compile(r"/windows/system32", re.I),
    re.compile(r"/proc/self/environ"),
]

COMMAND_INJECTION_PATTERNS = [
    re.compile(
        r"(\||&&|\|\||;)\s*(cat|ls|pwd|whoami|id|uname|ps|netstat|ifconfig|wget|curl|nc|telnet|ssh)\b",
        re.I,
    ),
    re.compile(r"(`|\$\(|\$\{).*(`|\)|\})", re.I),
    re.compile(r"(rm\s+-rf|rmdir|del\s+/[a-z])", re.I),
    re.compile(r"\b(chmod|chown|su|sudo|passwd)\s+", re.I),
    re.compile(r"(\bexec\b|\bsystem\b|\bpassthru\b|\bshell_exec\b)\s*\(", re.I),
]

NOSQL_INJECTION_PATTERNS = [
    re.compile(r"\$where", re.I),
    re.compile(r"\$(ne|gt|lt|regex|or|and|not|exists|in|nin)\s*:", re.I),
]

SUSPICIOUS_EXTENSION = re.compile(r"\.(php|asp|jsp|exe|bat|cmd|sh|pl|py|rb)$", re.I)
BASE64_VALUE = re.compile(r"^[A-Za-z0-9+/]+=*$")


def sanitize_text(value: str | None) -> str | None:
    """Sanitize user-supplied text to prevent stored XSS.

    Drops null bytes and control characters, then HTML-escapes dangerous
    characters (&, <, >, ", ') so the value is safe to render in a browser.
    """
    if value is None:
        return None
    value = _CONTROL_CHARS.sub("", value.replace("\0", ""))
    return html.escape(value, quote=True)


def _matches(patterns, value: str) -> bool:
    return any(p.search(value) for p in patterns)


def detect_sql_injection(value: str) -> bool:
    return _matches(SQL_INJECTION_PATTERNS, value.lower())


def detect_xss(value: str) -> bool:
    return _matches(XSS_PATTERNS, value)


def detect_path_traversal(value: str) -> bool:
    return _matches(PATH_TRAVERSAL_PATTERNS, value)


def detect_command_injection(value: str) -> bool:
    return _matches(COMMAND_INJECTION_PATTERNS, value.lower())


def detect_nosql_injection(value: str) -> bool:
    return _matches(NOSQL_INJECTION_PATTERNS, value.lower())


def detect_suspicious_patterns(value: str) -> bool:
    """Executable file extensions and XSS/SQL payloads hidden behind encoding."""
    if SUSPICIOUS_EXTENSION.search(value):
        return True

    if len(value) > 50 and BASE64_VALUE.match(value):
        try:
            decoded = base64.b64decode(value, validate=True).decode("utf-8", errors="ignore")
        except (binascii.Error, ValueError):
            decoded = ""
        if "<script" in decoded or "eval(" in decoded:
            return True

    if "%" in value:
        decoded = unquote(value)
        if detect_xss(decoded) or detect_sql_injection(decoded):
            return True

    return False


def truncate_for_logging(value: str, length: int = 200) -> str:
    return value[:length] + ("..." if len(value) > length else "")


_DETECTORS = [
    ("sql_injection_attempt", detect_sql_injection, SEVERITY_CRITICAL),
    ("xss_attempt", detect_xss, SEVERITY_CRITICAL),
    ("path_traversal_attempt", detect_path_traversal, SEVERITY_HIGH),
    ("command_injection_attempt", detect_command_injection, SEVERITY_CRITICAL),
    ("nosql_injection_attempt", detect_nosql_injection, SEVERITY_HIGH),
    ("suspicious_pattern", detect_suspicious_patterns, SEVERITY_MEDIUM),
]


def analyze_input(field: str, value: str) -> List[Dict[str, str]]:
    """Return a threat entry for every detector that matches ``value``."""
    if not isinstance(value, str) or not value:
        return []
    return [
        {
            "type": threat_type,
            "field": field,
            "value": truncate_for_logging(value),
            "severity": severity,
        }
        for threat_type, detector, severity in _DETECTORS
        if detector(value)
    ]


def flatten_strings(data, prefix: str = "") -> Dict[str, str]:
    """Flatten nested dicts/lists to ``{"a.b.0": "value"}``, keeping only strings."""
    flat: Dict[str, str] = {}
    if isinstance(data, dict):
        items = data.items()
    elif isinstance(data, list):
        items = enumerate(data)
    else:
        return flat

    for key, value in items:
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, (dict, list)):
            flat.update(flatten_strings(value, full_key))
        elif isinstance(value, str):
            flat[full_key] = value
    return flat
