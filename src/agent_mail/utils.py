"""Utility helpers shared by the registry, lease manager and mailbox."""

from __future__ import annotations

import hashlib
import random
import re
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Optional

# Generated agent names are Adjective+Noun pairs ("GreenLake", "QuietFalcon").
# Capitalized single words only, so every pair reads as CamelCase.
ADJECTIVES: Sequence[str] = (
    "Amber",
    "Azure",
    "Black",
    "Blue",
    "Bold",
    "Brave",
    "Bright",
    "Bronze",
    "Brown",
    "Calm",
    "Clever",
    "Cobalt",
    "Copper",
    "Coral",
    "Crimson",
    "Cyan",
    "Dusty",
    "Emerald",
    "Frosty",
    "Gentle",
    "Golden",
    "Gray",
    "Green",
    "Hazy",
    "Indigo",
    "Ivory",
    "Jade",
    "Lilac",
    "Lucky",
    "Magenta",
    "Misty",
    "Navy",
    "Olive",
    "Orange",
    "Pearl",
    "Pink",
    "Purple",
    "Quiet",
    "Rapid",
    "Red",
    "Rustic",
    "Sage",
    "Scarlet",
    "Silent",
    "Silver",
    "Stormy",
    "Sunny",
    "Swift",
    "Teal",
    "Violet",
    "White",
    "Wild",
)

NOUNS: Sequence[str] = (
    "Anchor",
    "Badger",
    "Basin",
    "Bay",
    "Beacon",
    "Bear",
    "Bridge",
    "Brook",
    "Canyon",
    "Castle",
    "Cat",
    "Cliff",
    "Compass",
    "Cove",
    "Crane",
    "Creek",
    "Deer",
    "Dog",
    "Dune",
    "Eagle",
    "Falcon",
    "Finch",
    "Forest",
    "Forge",
    "Fox",
    "Glacier",
    "Glen",
    "Grove",
    "Harbor",
    "Hawk",
    "Heron",
    "Hill",
    "Island",
    "Lake",
    "Lantern",
    "Lynx",
    "Meadow",
    "Mill",
    "Moose",
    "Mountain",
    "Otter",
    "Owl",
    "Peak",
    "Pond",
    "Raven",
    "Reef",
    "Ridge",
    "River",
    "Robin",
    "Stone",
    "Tower",
    "Valley",
    "Wolf",
)

AGENT_NAME_MAX_LENGTH = 64

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_AGENT_NAME_STRIP_RE = re.compile(r"[^A-Za-z0-9]+")
_AGENT_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]{0,63}$")
_THREAD_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def slugify(value: str) -> str:
    """Normalize a human-readable value into a slug."""
    normalized = value.strip().lower()
    slug = _SLUG_RE.sub("-", normalized).strip("-")
    return slug or "project"


def project_slug(human_key: str) -> str:
    """Slug for a project path: basename plus a short digest of the full path.

    Two checkouts sharing a directory name (``~/a/app`` and ``~/b/app``) get
    distinct slugs while staying readable.
    """
    base = slugify(PurePath(human_key).name or human_key)
    digest = hashlib.sha1(human_key.encode("utf-8")).hexdigest()[:10]
    return f"{base}-{digest}"


def generate_agent_name(rng: Optional[random.Random] = None) -> str:
    """Return a random adjective+noun combination."""
    chooser = rng or random
    return f"{chooser.choice(ADJECTIVES)}{chooser.choice(NOUNS)}"


def sanitize_agent_name(value: str) -> Optional[str]:
    """Strip everything but ASCII alphanumerics; return None if nothing remains."""
    cleaned = _AGENT_NAME_STRIP_RE.sub("", value.strip())
    return cleaned or None


def validate_agent_name_format(name: str) -> bool:
    """Agent names start with a letter, hold only ASCII alphanumerics, and fit in 64 characters."""
    if not name:
        return False
    return _AGENT_NAME_RE.fullmatch(name) is not None


def validate_thread_id_format(thread_id: str) -> bool:
    """Validate that a thread_id is a safe opaque key.

    Thread ids usually carry an external task identifier, so enforce:
    - ASCII alphanumerics plus '.', '_', '-'
    - Must start with an alphanumeric character
    - Max length 128
    """
    candidate = (thread_id or "").strip()
    if not candidate:
        return False
    return _THREAD_ID_RE.fullmatch(candidate) is not None


def naive_utc(dt: Optional[datetime] = None) -> datetime:
    """Return ``dt`` (default: now) as a naive UTC datetime, the storage form."""
    if dt is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if dt.tzinfo is not None and dt.tzinfo.utcoffset(dt) is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def iso(dt: Any) -> Optional[str]:
    """Return ISO-8601 in UTC; naive datetimes from SQLite are assumed UTC."""
    if dt is None:
        return None
    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt)
        except ValueError:
            return dt
    if getattr(dt, "tzinfo", None) is None or dt.tzinfo.utcoffset(dt) is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()
