"""
Object key helpers.

Upload keys are namespaced by date plus a random component; derived keys
are a pure function of (source key, format) so a thumbnail can always be
located from its original.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from pathlib import PurePosixPath
from typing import Optional

THUMB_SUFFIX = "_thumb"

_EXTENSION_RE = re.compile(r"\.[^/.]+$")
_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9\-_]")

_FORMAT_EXTENSIONS = {
    "jpeg": "jpg",
    "jpg": "jpg",
    "png": "png",
    "webp": "webp",
}


def extension_for_format(fmt: str) -> str:
    fmt = (fmt or "").lower()
    return _FORMAT_EXTENSIONS.get(fmt, fmt)


def derive_thumb_key(source_key: str, fmt: str) -> str:
    base_key = _EXTENSION_RE.sub("", source_key)
    return f"{base_key}{THUMB_SUFFIX}.{extension_for_format(fmt)}"


def generate_object_key(filename: str, now: Optional[datetime] = None) -> str:
    """Format: uploads/YYYY/MM/DD/<uuid>-<sanitized-name><ext>"""
    now = now or datetime.utcnow()
    name = PurePosixPath((filename or "").replace("\\", "/")).name
    stem, ext = _split_extension(name)
    sanitized = _UNSAFE_NAME_RE.sub("_", stem) or "file"
    return f"uploads/{now:%Y/%m/%d}/{uuid.uuid4()}-{sanitized}{ext}"


def _split_extension(name: str) -> tuple[str, str]:
    match = _EXTENSION_RE.search(name)
    if not match or match.start() == 0:
        return name, ""
    return name[: match.start()], match.group(0)
