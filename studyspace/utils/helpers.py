"""
Common utility functions and helpers.
"""
from datetime import datetime, timezone
import re


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    All timestamp columns store naive UTC so values compare the same way on
    every database backend.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_whitespace(text: str) -> str:
    """
    Collapse runs of spaces and tabs and trim the result.

    Args:
        text: Raw text string

    Returns:
        Text with single spaces and no leading/trailing whitespace
    """
    return re.sub(r'[ \t]+', ' ', text).strip()


def strip_list_marker(line: str) -> str:
    """
    Remove a leading bullet or numbering marker from a line.

    Handles "- ", "* ", "• ", "1. ", "1) " and surrounding whitespace.
    """
    return re.sub(r'^\s*(?:[-*•]+|\d{1,3}[.)])\s*', '', line).strip()


def truncate_text(text: str, max_length: int = 200, suffix: str = "...") -> str:
    """
    Truncate text to maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)].rstrip() + suffix
