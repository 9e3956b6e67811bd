"""Helpers to interpret free-text answers from the generation service."""

import re


# Answers meaning "the garment is not worn"
NEGATIVE_PATTERNS = [
    r'\bno\b',
    r'\bnot[\s_]found\b',
    r'없음',
    r'감지되지 않',
    r'없습니다',
]

_NEGATIVE_RE = re.compile("|".join(NEGATIVE_PATTERNS), re.IGNORECASE)

IMAGE_URL_RE = re.compile(r'(https?://[^\s<>"\')\]]+\.(?:jpg|jpeg|png|gif|webp))', re.IGNORECASE)


def is_negative_answer(text: str | None) -> bool:
    """Return True if the service said the garment is absent.

    The first token of the first line wins when it is a plain YES or NO;
    otherwise any negative marker anywhere in the text counts.
    """
    stripped = (text or "").strip()
    if not stripped:
        return False

    tokens = stripped.splitlines()[0].split()
    first_token = re.sub(r'[^\w]', '', tokens[0]).upper() if tokens else ""
    if first_token == "NO":
        return True
    if first_token == "YES":
        return False

    return bool(_NEGATIVE_RE.search(text))


def is_blocked_url(url: str, blocked_patterns: list[str]) -> bool:
    """Check a URL against host and placeholder denylist patterns."""
    lowered = url.lower()
    return any(pattern.lower() in lowered for pattern in blocked_patterns)


def find_image_urls(text: str | None) -> list[str]:
    """All image URLs in order of appearance."""
    if not text:
        return []
    return IMAGE_URL_RE.findall(text)


def first_usable_image_url(text: str | None, blocked_patterns: list[str]) -> str | None:
    """First image URL that is not denylisted. Blocked ones are skipped, not fatal."""
    for url in find_image_urls(text):
        if not is_blocked_url(url, blocked_patterns):
            return url
    return None
