"""
Strips markup from user supplied chat text before it is stored or fanned out.
"""

import html
import logging

import bleach

from config import MESSAGE_SANITIZE_ENABLED

logger = logging.getLogger(__name__)


def sanitize_text(text: str) -> str:
    """
    Remove HTML tags and control characters from ``text``.

    Newlines and tabs survive; the result is stripped. Returns an empty string
    for empty input, so callers can run their emptiness checks afterwards.
    """
    if not text:
        return ""

    cleaned = text.strip()
    if not MESSAGE_SANITIZE_ENABLED:
        return cleaned

    # tags=[] with strip=True drops tags; entities bleach escapes are turned back into plain text
    sanitized = html.unescape(bleach.clean(cleaned, tags=[], strip=True))
    sanitized = "".join(
        char for char in sanitized if char.isprintable() or char in ("\n", "\r", "\t")
    )
    if sanitized != cleaned:
        logger.debug("Stripped markup from user text")
    return sanitized.strip()
