"""Find the "details" link of an email.

Layers, first hit wins:

1. an ``<a href>`` whose text contains the link text;
2. an ``<a href>`` whose text contains the nearby words in order;
3. the first URL following the link text on the same line (HTML + text);
4. any URL in the HTML with all nearby words within 200 characters.
"""

from __future__ import annotations

import re

from .models import StructuredMessage

DEFAULT_LINK_TEXT = "View flight details"
DEFAULT_NEARBY_WORDS = ("flight", "details")

_URL_RE = re.compile(r"https?://[^\s<>\"]+")
_WINDOW = 200


def _anchor_pattern(text_re: str) -> re.Pattern[str]:
    return re.compile(
        r"<a[^>]+href=[\"']([^\"']+)[\"'][^>]*>[^<]*" + text_re + r"[^<]*</a>",
        re.IGNORECASE,
    )


def extract_details_link(
    message: StructuredMessage,
    link_text: str = DEFAULT_LINK_TEXT,
    nearby_words: tuple[str, ...] = DEFAULT_NEARBY_WORDS,
) -> str | None:
    html = message.html or ""
    text = message.text or ""

    match = _anchor_pattern(re.escape(link_text)).search(html)
    if match:
        return match.group(1)

    if nearby_words:
        words_re = r"[^<]*".join(re.escape(w) for w in nearby_words)
        match = _anchor_pattern(words_re).search(html)
        if match:
            return match.group(1)

    after_text = re.compile(
        re.escape(link_text) + r"[^\n]*?(https?://[^\s<>\"]+)",
        re.IGNORECASE,
    )
    match = after_text.search(f"{html} {text}")
    if match:
        return match.group(1)

    if nearby_words:
        for url_match in _URL_RE.finditer(html):
            start = max(0, url_match.start() - _WINDOW)
            surrounding = html[start : url_match.start() + _WINDOW].lower()
            if all(word.lower() in surrounding for word in nearby_words):
                return url_match.group(0)

    return None
