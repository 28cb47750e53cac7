"""Path normalization and path-derived recording ids."""

import hashlib
import os
import platform
from pathlib import Path


def normalize_path(path: Path | str) -> str:
    """
    Canonical string form of a path for matching and hashing.

    Backslashes become forward slashes, ``~`` and relative segments are
    resolved, and on Windows the result is case-folded so that the same
    file reported by two producers compares equal.
    """
    text = str(path).strip().replace("\\", "/")
    text = os.path.expanduser(text)
    text = os.path.normpath(text).replace("\\", "/")
    if not os.path.isabs(text) and not _looks_like_windows_drive(text):
        text = os.path.abspath(text).replace("\\", "/")
    if platform.system() == "Windows":
        text = text.lower()
    return text


def _looks_like_windows_drive(text: str) -> bool:
    return len(text) >= 2 and text[1] == ":" and text[0].isalpha()


def recording_id_for_path(path: Path | str) -> str:
    """Stable recording id derived from a replay's normalized path."""
    digest = hashlib.sha256(normalize_path(path).encode("utf-8")).hexdigest()
    return f"slp-{digest[:32]}"
