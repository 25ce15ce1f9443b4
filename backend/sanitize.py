import re
from typing import Optional

REGEXP_SPECIAL_CHARACTERS = re.compile(r"[.*+?^${}()|\[\]\\]")

HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#39;",
}
HTML_ESCAPE_TABLE = str.maketrans(HTML_ESCAPES)

SCRIPT_BLOCK_PATTERN = re.compile(
    r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE
)
TAG_PATTERN = re.compile(r"<[^>]*>")
JAVASCRIPT_URI_PATTERN = re.compile(r"javascript:", re.IGNORECASE)
EVENT_HANDLER_PATTERN = re.compile(r"on\w+\s*=", re.IGNORECASE)


def escape_regexp(value: str) -> str:
    """Escape every regular-expression metacharacter so ``value`` matches literally."""
    return REGEXP_SPECIAL_CHARACTERS.sub(lambda match: "\\" + match.group(0), value)


def escape_html(value: str) -> str:
    return value.translate(HTML_ESCAPE_TABLE)


def sanitize_html(value: Optional[str]) -> str:
    """Strip markup from free text.

    Removes ``<script>`` blocks, then every remaining tag, ``javascript:`` URIs
    and inline ``on*=`` handlers. This is a denylist pass over the raw string,
    not an HTML parser, so it should not be relied on as the only defence
    against markup injection.
    """
    if not value or not isinstance(value, str):
        return ""

    cleaned = SCRIPT_BLOCK_PATTERN.sub("", value)
    cleaned = TAG_PATTERN.sub("", cleaned)
    cleaned = JAVASCRIPT_URI_PATTERN.sub("", cleaned)
    cleaned = EVENT_HANDLER_PATTERN.sub("", cleaned)
    return cleaned.strip()
