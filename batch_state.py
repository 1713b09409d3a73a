"""Cross-run batch state and the per-batch synthesis manifest.

The audio rotation index and the per-day output counter survive between runs
in two small JSON files under the output directory. Only `load_batch_state`
and `save_batch_state` touch those files; everything else works on the
`BatchState` object handed to and returned from the compose batch.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

LAST_MUSIC_INDEX_FILENAME = "last_music_idx.json"
LAST_VIDEO_INDEX_FILENAME = "last_video_index.json"
SYNTHESIS_LOG_FILENAME = "synthesis_log.json"


@dataclass
class BatchState:
    input_dir_key: str
    music_dir_key: str
    last_audio_index: Optional[int] = None
    output_indices: dict[str, int] = field(default_factory=dict)

    def audio_start_index(self, pool_size: int) -> int:
        """Continue the rotation after the last used track, or start over."""
        if pool_size <= 0:
            raise ValueError("Audio pool is empty.")
        if self.last_audio_index is None:
            return 0
        return (self.last_audio_index + 1) % pool_size

    def record_output_index(self, prefix: str, date_str: str, index: int) -> None:
        key = f"{prefix}_{date_str}"
        if index > self.output_indices.get(key, 0):
            self.output_indices[key] = index


def _read_json_dict(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    return payload if isinstance(payload, dict) else {}


def load_batch_state(output_dir: Path, *, input_dir_key: str, music_dir_key: str) -> BatchState:
    music_payload = _read_json_dict(output_dir / LAST_MUSIC_INDEX_FILENAME)
    last_audio_index: Optional[int] = None
    if (
        music_payload.get("inputDir") == input_dir_key
        and music_payload.get("musicDir") == music_dir_key
        and isinstance(music_payload.get("lastMusicIdx"), int)
    ):
        last_audio_index = music_payload["lastMusicIdx"]

    index_payload = _read_json_dict(output_dir / LAST_VIDEO_INDEX_FILENAME)
    output_indices = {
        str(key): int(value)
        for key, value in index_payload.items()
        if isinstance(value, int) and not isinstance(value, bool)
    }
    return BatchState(
        input_dir_key=input_dir_key,
        music_dir_key=music_dir_key,
        last_audio_index=last_audio_index,
        output_indices=output_indices,
    )


def save_batch_state(output_dir: Path, state: BatchState) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    if state.last_audio_index is not None:
        music_payload = {
            "inputDir": state.input_dir_key,
            "musicDir": state.music_dir_key,
            "lastMusicIdx": state.last_audio_index,
        }
        (output_dir / LAST_MUSIC_INDEX_FILENAME).write_text(
            json.dumps(music_payload, indent=2), encoding="utf-8"
        )

    index_path = output_dir / LAST_VIDEO_INDEX_FILENAME
    merged = {
        key: value
        for key, value in _read_json_dict(index_path).items()
        if isinstance(value, int) and not isinstance(value, bool)
    }
    for key, value in state.output_indices.items():
        if value > merged.get(key, 0):
            merged[key] = value
    index_path.write_text(json.dumps(merged, indent=2, sort_keys=True), encoding="utf-8")


def max_existing_output_index(output_dir: Path, prefix: str, date_str: str) -> int:
    """Highest `<prefix>_<date>_<n>.mp4` index anywhere under `output_dir`."""
    pattern = re.compile(rf"^{re.escape(prefix)}_{re.escape(date_str)}_(\d+)\.mp4$", re.IGNORECASE)
    highest = 0
    if not output_dir.exists():
        return highest
    for candidate in output_dir.rglob("*.mp4"):
        match = pattern.match(candidate.name)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def next_output_index(output_dir: Path, state: BatchState, prefix: str, date_str: str) -> int:
    """Never reuse an index, even when earlier outputs were deleted."""
    persisted = state.output_indices.get(f"{prefix}_{date_str}", 0)
    return max(max_existing_output_index(output_dir, prefix, date_str), persisted) + 1


class SynthesisLog:
    """JSON manifest of every assembly written in one batch directory."""

    def __init__(self, batch_dir: Path) -> None:
        self.path = batch_dir / SYNTHESIS_LOG_FILENAME
        if not self.path.exists():
            self.path.write_text("{}", encoding="utf-8")

    def read(self) -> dict:
        return _read_json_dict(self.path)

    def record(
        self,
        video_name: str,
        *,
        clips: list[str],
        audio: str,
        open_dir: Path,
        clips_dir: Path,
        music_dir: Path,
        timestamp: Optional[datetime] = None,
        audio_path: Optional[Path] = None,
        intro_count: Optional[int] = None,
        adjustment: Optional[str] = None,
        rate: Optional[float] = None,
        trim_last_to: Optional[float] = None,
    ) -> None:
        payload = self.read()
        entry = {
            "clips": clips,
            "audio": audio,
            "openDir": str(open_dir),
            "clipsDir": str(clips_dir),
            "musicDir": str(music_dir),
            "timestamp": (timestamp or datetime.now()).isoformat(timespec="seconds"),
        }
        # Optional fields let `recreate` replay the exact assembly.
        if audio_path is not None:
            entry["audioPath"] = str(audio_path)
        if intro_count is not None:
            entry["introCount"] = intro_count
        if adjustment is not None:
            entry["adjustment"] = adjustment
        if rate is not None:
            entry["rate"] = rate
        if trim_last_to is not None:
            entry["trimLastTo"] = trim_last_to
        payload[video_name] = entry
        self.path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
