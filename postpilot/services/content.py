import re

from postpilot.errors import ContentRequired, ContentTooLong

MAX_LINKEDIN_POST_LENGTH = 3000

# C0 controls and DEL, keeping \t \n \r
CONTROL_CHARS_RE = re.compile(r"[\u0000-\u0008\u000B\u000C\u000E-\u001F\u007F]")
LINE_SEPARATORS_RE = re.compile(r"[\u2028\u2029]")


def normalize_content(text: str) -> str:
    text = (text or "").replace("\r\n", "\n")
    text = LINE_SEPARATORS_RE.sub("\n", text)
    text = CONTROL_CHARS_RE.sub("", text)
    return text.strip()


def post_length(text: str) -> int:
    """Length as LinkedIn counts it, in UTF-16 code units."""
    return len(text.encode("utf-16-le", "surrogatepass")) // 2


def validate_content(text: str) -> str:
    """Normalize post text and enforce LinkedIn's limits; returns the text to send."""
    normalized = normalize_content(text)
    if not normalized:
        raise ContentRequired("Content is required.")
    if post_length(normalized) > MAX_LINKEDIN_POST_LENGTH:
        raise ContentTooLong(f"LinkedIn posts are limited to {MAX_LINKEDIN_POST_LENGTH} characters.")
    return normalized
