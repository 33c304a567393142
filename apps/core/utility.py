from __future__ import annotations

import re
import time
from typing import Tuple, Type

from django.conf import settings
from django.utils.crypto import get_random_string
from django.utils.http import int_to_base36
from django.utils.text import slugify

SLUG_BASE_MAX_LENGTH = 40
SLUG_SUFFIX_LENGTH = 6
SLUG_SUFFIX_CHARS = "abcdefghijklmnopqrstuvwxyz0123456789"
DEFAULT_SLUG = "survey"

SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def page_bounds(page: int, page_size: int) -> Tuple[int, int]:
    """Compute start/end slice indices, guarding lower bounds and capping size."""
    page = max(1, page)
    page_size = max(1, min(100, page_size))
    start = (page - 1) * page_size
    end = start + page_size
    return start, end


def generate_slug(text: str) -> str:
    """
    Lowercase, hyphenated, ASCII-only form of `text`.
    Underscores count as separators; runs of separators collapse to one hyphen.
    """
    slug = slugify((text or "").replace("_", " "))
    return re.sub(r"-{2,}", "-", slug).strip("-")


def is_valid_slug(slug: str) -> bool:
    return bool(SLUG_RE.match(slug or "")) and 3 <= len(slug) <= 50


def generate_unique_slug(model: Type, title: str, slug_field: str = "slug") -> str:
    """
    Build a unique slug for `title` against `model.<slug_field>`.

    The base is capped at 40 characters. On collision a random 6-character
    suffix is tried up to SURVEY_SLUG_MAX_ATTEMPTS times; after that a base-36
    millisecond timestamp is appended without further checks.
    """
    base = generate_slug(title)[:SLUG_BASE_MAX_LENGTH].strip("-") or DEFAULT_SLUG

    def exists(candidate: str) -> bool:
        return model.objects.filter(**{slug_field: candidate}).exists()

    candidate = base
    attempts = 0
    max_attempts = getattr(settings, "SURVEY_SLUG_MAX_ATTEMPTS", 10)
    while exists(candidate) and attempts < max_attempts:
        suffix = get_random_string(SLUG_SUFFIX_LENGTH, allowed_chars=SLUG_SUFFIX_CHARS)
        candidate = f"{base}-{suffix}"
        attempts += 1

    if exists(candidate):
        candidate = f"{base}-{int_to_base36(int(time.time() * 1000))}"
    return candidate
