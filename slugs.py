import re
from typing import Optional

from pymongo.collection import Collection

from database import oid
from errors import SlugConflict, ValidationError

_NON_SLUG = re.compile(r"[^a-z0-9]+")

MAX_SLUG_ATTEMPTS = 1000


def slug_of(text: str) -> str:
    """Lowercase, collapse every run of non [a-z0-9] into one dash, trim dashes."""
    return _NON_SLUG.sub("-", (text or "").lower()).strip("-")


def generate_unique_slug(collection: Collection, text: str, exclude_id: Optional[str] = None,
                         max_attempts: int = MAX_SLUG_ATTEMPTS) -> str:
    base = slug_of(text)
    if not base:
        raise ValidationError("Cannot derive a slug from an empty title")

    excluded = oid(exclude_id) if exclude_id else None
    candidate = base
    for k in range(max_attempts):
        if k:
            candidate = f"{base}-{k}"
        query = {"slug": candidate}
        if excluded is not None:
            query["_id"] = {"$ne": excluded}
        if collection.count_documents(query, limit=1) == 0:
            return candidate
    raise SlugConflict(f"Could not find a free slug for '{base}' after {max_attempts} attempts")
