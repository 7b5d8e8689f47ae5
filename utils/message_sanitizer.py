"""
Message text sanitization.

Chat text is rendered by web and mobile clients, so markup is stripped before
it is stored. Stored text is what every reader (and the conversation preview)
sees.
"""

import logging

import bleach

from config import MESSAGE_SANITIZE_ENABLED

logger = logging.getLogger(__name__)

_KEEP_WHITESPACE = ("\n", "\r", "\t")


def sanitize_message(text: str) -> str:
    """Strip HTML tags and control characters; returns '' for empty input."""
    if not text:
        return ""

    cleaned = text.strip()
    if not MESSAGE_SANITIZE_ENABLED:
        return cleaned

    # tags=[] with strip=True drops every tag and keeps the inner text
    sanitized = bleach.clean(cleaned, tags=[], strip=True)
    sanitized = "".join(ch for ch in sanitized if ch.isprintable() or ch in _KEEP_WHITESPACE)
    if sanitized != cleaned:
        logger.debug("Stripped markup from message text")
    return sanitized.strip()
