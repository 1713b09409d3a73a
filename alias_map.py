"""Append-only alias map: short symbolic names for source videos."""

from __future__ import annotations

import json
import string
from pathlib import Path

from toolchain import VIDEO_EXTENSIONS

PENDING_DIRNAME = "pending"


def short_alias(index: int) -> str:
    """Spreadsheet-style name for a zero-based index: a..z, aa, ab, ..."""
    if index < 0:
        raise ValueError("Alias index must be >= 0.")
    letters = string.ascii_lowercase
    alias = ""
    value = index
    while True:
        alias = letters[value % 26] + alias
        value = value // 26 - 1
        if value < 0:
            return alias


def generate_short_aliases(count: int) -> list[str]:
    return [short_alias(index) for index in range(count)]


def directory_key(input_dir: Path) -> str:
    """Name used as alias prefix; the pending folder borrows its parent's name."""
    resolved = input_dir.resolve()
    if resolved.name == PENDING_DIRNAME:
        return resolved.parent.name
    return resolved.name


def list_video_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix.lower() in VIDEO_EXTENSIONS
    )


def load_alias_map(alias_map_path: Path) -> dict[str, str]:
    if not alias_map_path.exists():
        return {}
    try:
        payload = json.loads(alias_map_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    if not isinstance(payload, dict):
        return {}
    return {str(key): str(value) for key, value in payload.items()}


def update_alias_map(input_dir: Path, alias_map_path: Path) -> dict[str, str]:
    """Assign an alias to every video in `input_dir` that has none yet.

    Existing entries are never removed or renamed, and short aliases already
    in use (under any prefix) are never handed out again.
    """
    alias_map = load_alias_map(alias_map_path)
    dir_key = directory_key(input_dir)
    used_shorts = {key.rsplit("_", 1)[-1] for key in alias_map}

    short_index = 0
    for video in list_video_files(input_dir):
        base_name = video.stem
        already_aliased = any(
            value == base_name and key.startswith(f"{dir_key}_")
            for key, value in alias_map.items()
        )
        if already_aliased:
            continue

        while short_alias(short_index) in used_shorts:
            short_index += 1
        short = short_alias(short_index)
        alias_map[f"{dir_key}_{short}"] = base_name
        used_shorts.add(short)
        short_index += 1

    alias_map_path.parent.mkdir(parents=True, exist_ok=True)
    alias_map_path.write_text(json.dumps(alias_map, indent=2, ensure_ascii=False), encoding="utf-8")
    return alias_map


def invert_alias_map(alias_map: dict[str, str]) -> dict[str, str]:
    """Map base file name -> alias (the latest alias wins on duplicates)."""
    return {value: key for key, value in alias_map.items()}
