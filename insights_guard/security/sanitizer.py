"""Inbound free-text sanitization for admin chat messages.

Text is normalized, stripped of markup and role-delimiter markers, and
HTML-encoded before it reaches the AI model, the logs, or storage.
Injection signatures (SQL, shell, script vectors, turn impersonation)
are detected on the normalized text and after every cleaning pass, and
reported as ``flagged``; the caller refuses flagged input rather than
passing a cleaned copy on.
Nothing here builds a query or a command from the text.
"""

from __future__ import annotations

import html
import re
import unicodedata

import structlog

from insights_guard.models import SanitizationResult

logger = structlog.get_logger()

DEFAULT_MAX_LENGTH = 2000

_TAG_RE = re.compile(r"<[^>]*>")

# Zero-width and bidi format characters are dropped along with C0/C1
# controls so they cannot hide inside a role marker.
_CONTROL_RE = re.compile(
    r"[\x00-\x08\x0b-\x1f\x7f-\x9f\u200b-\u200f\u202a-\u202e\u2060\ufeff]"
)

# Markers that open a system or assistant turn in a chat-style prompt
ROLE_MARKER_RE = re.compile(
    r"\b(?:system|assistant)\s*:"
    r"|###\s*(?:instructions?|system|assistant)\b\s*:?"
    r"|\[/?INST\]"
    r"|<<\s*/?\s*SYS\s*>>"
    r"|<\|im_(?:start|end)\|>",
    re.IGNORECASE,
)

_SHELL_COMMANDS = r"(?:rm|curl|wget|sh|bash|zsh|nc|chmod|chown|sudo|python\d?|perl)"

# Detected, never passed through. Order matters only for the reasons list.
INJECTION_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (ROLE_MARKER_RE, "role delimiter marker"),
    (
        re.compile(
            r"\b(?:ignore|disregard|forget)\s+(?:all\s+)?(?:the\s+)?"
            r"(?:previous|prior|above)\s+(?:instructions|prompts?|rules)",
            re.IGNORECASE,
        ),
        "prompt override phrase",
    ),
    (re.compile(r"<\s*script\b", re.IGNORECASE), "script tag"),
    (re.compile(r"javascript\s*:", re.IGNORECASE), "javascript: URL"),
    (re.compile(r"\bon(?:error|load|click|mouseover|focus)\s*=", re.IGNORECASE), "inline event handler"),
    (
        re.compile(r";\s*(?:drop|delete|update|insert|alter|create|truncate)\s", re.IGNORECASE),
        "SQL statement chaining",
    ),
    (re.compile(r"\bunion\s+(?:all\s+)?select\b", re.IGNORECASE), "SQL UNION SELECT"),
    (re.compile(r"'\s*or\s+'?\w+'?\s*=\s*'?\w+", re.IGNORECASE), "SQL tautology"),
    (re.compile(r"'\s*--"), "SQL comment terminator"),
    (re.compile(r"\$[({]"), "shell substitution"),
    (re.compile(rf"`[^`]*\b{_SHELL_COMMANDS}\b[^`]*`"), "shell backtick substitution"),
    (re.compile(rf"(?:;|&&|\|\|?)\s*{_SHELL_COMMANDS}\b"), "shell command chaining"),
]

_LOG_MASK_RE = re.compile(r"[<>\"';\\]")


def sanitize(raw: str | None, max_length: int = DEFAULT_MAX_LENGTH) -> SanitizationResult:
    """Clean a piece of inbound text.

    Never raises. The returned text is markup-free, HTML-encoded, at
    most ``max_length`` characters, and stable under a second pass.

    Args:
        raw: Text as received from the client. None is treated as "".
        max_length: Maximum length of the encoded output.

    Returns:
        SanitizationResult with the cleaned text and detection results.
    """
    original = raw if isinstance(raw, str) else ""
    found: set[str] = set()
    encoded = _clean(original, max_length, found)
    # A cut can complete a marker the full text did not contain
    while True:
        again = _clean(encoded, max_length, found)
        if again == encoded:
            break
        encoded = again
    reasons = tuple(reason for _, reason in INJECTION_PATTERNS if reason in found)

    if reasons:
        logger.warning("sanitizer_flagged", reasons=list(reasons), preview=preview(original))

    return SanitizationResult(
        text=encoded,
        modified=encoded != original,
        flagged=bool(reasons),
        reasons=reasons,
    )


def preview(text: str | None, limit: int = 100) -> str:
    """Shorten text for log lines and audit details, masking quote-like characters."""
    if text is None:
        return "null"
    masked = _LOG_MASK_RE.sub("*", text)
    if len(masked) > limit:
        return masked[:limit] + "..."
    return masked


def _clean(text: str, max_length: int, found: set[str]) -> str:
    """Decode, clean, encode and truncate once, adding detections to ``found``."""
    text = _normalize(html.unescape(text))
    found.update(_detect(text))

    # Removing one marker can splice together another
    while True:
        cleaned = _normalize(_TAG_RE.sub("", ROLE_MARKER_RE.sub("", text)))
        if cleaned == text:
            break
        found.update(_detect(cleaned))
        text = cleaned

    encoded = html.escape(text.strip(), quote=True)
    return _truncate(encoded, max_length).rstrip()


def _detect(text: str) -> set[str]:
    return {reason for pattern, reason in INJECTION_PATTERNS if pattern.search(text)}


def _normalize(text: str) -> str:
    return _CONTROL_RE.sub("", unicodedata.normalize("NFKC", text))


def _truncate(text: str, max_length: int) -> str:
    """Cut encoded text to ``max_length`` on a safe boundary.

    Backs off rather than splitting an HTML entity or separating a base
    character from its combining marks.
    """
    if len(text) <= max_length:
        return text
    cut = max_length
    # Each back-off can expose the other case, so repeat until neither moves
    while True:
        previous = cut
        amp = text.rfind("&", 0, cut)
        if amp != -1 and text.find(";", amp, cut) == -1:
            cut = amp
        while cut > 0 and unicodedata.combining(text[cut]):
            cut -= 1
        if cut == previous:
            return text[:cut]
