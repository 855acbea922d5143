"""Relevance filter applied before anything is published."""

from __future__ import annotations

from .models import StructuredMessage


def matches_keyword(message: StructuredMessage, keyword: str) -> bool:
    """Return *True* if *keyword* occurs in sender, recipients, subject, text or HTML.

    Case-insensitive substring match.  An empty keyword matches everything.
    """
    needle = keyword.lower()
    fields = (
        message.sender,
        message.recipients,
        message.subject,
        message.text,
        message.html,
    )
    return any(field and needle in field.lower() for field in fields)
