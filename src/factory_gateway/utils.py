"""
Utility functions for identifiers and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided strings into slugs and object-store keys
- Generating project and session identifiers
- Encoding integers in base36 for compact, URL-safe ids
"""

from __future__ import annotations

import re
import secrets
import time

# Runs of anything other than lowercase alphanumerics collapse to one hyphen
SLUG_PATTERN = re.compile(r"[^a-z0-9]+")

# Object keys keep the original length; every unsafe character becomes "_"
OBJECT_NAME_PATTERN = re.compile(r"[^a-zA-Z0-9._-]")

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    """
    Encode a non-negative integer in lowercase base36.

    Example:
        >>> to_base36(35)
        "z"
        >>> to_base36(36)
        "10"
    """
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def now_millis() -> int:
    return int(time.time() * 1000)


def random_base36(bits: int = 32) -> str:
    return to_base36(secrets.randbits(bits))


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a lowercase slug from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase slug made of alphanumerics and single hyphens, or the fallback

    Example:
        >>> sanitize_label("My Project!", "project")
        "my-project"
        >>> sanitize_label("@#$", "project")
        "project"
    """
    cleaned = SLUG_PATTERN.sub("-", label.strip().lower())
    cleaned = cleaned.strip("-")
    return cleaned or fallback


def make_project_id(project_name: str) -> str:
    """
    Derive a project id from a display name.

    The slug is suffixed with a base36 timestamp so two projects with the same
    name still get distinct ids.
    """
    return f"{sanitize_label(project_name, 'project')}-{to_base36(now_millis())}"


def make_session_id(prefix: str = "session") -> str:
    return f"{prefix}_{now_millis()}_{random_base36()[:6]}"


def sanitize_object_name(filename: str) -> str:
    """
    Make a filename safe to embed in an object-store key.

    Example:
        >>> sanitize_object_name("My Report (v2).pdf")
        "My_Report__v2_.pdf"
    """
    return OBJECT_NAME_PATTERN.sub("_", filename)
