"""Audio track pool: listing, duration pre-filtering and probing."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from errors import ProbeFailure
from media_probe import get_media_duration
from toolchain import AUDIO_EXTENSIONS, progress_write


@dataclass(frozen=True)
class AudioTrack:
    path: Path
    duration: float

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class AudioFilterResult:
    target_dir: Path
    accepted: list[str]
    rejected: list[str]
    unreadable: list[str]


def list_audio_files(music_dir: Path) -> list[Path]:
    if not music_dir.is_dir():
        return []
    return sorted(
        path
        for path in music_dir.iterdir()
        if path.is_file() and path.suffix.lower() in AUDIO_EXTENSIONS
    )


def filtered_music_dir(music_dir: Path, min_duration: float, max_duration: float) -> Path:
    return music_dir / f"{min_duration:g}-{max_duration:g}"


def resolve_music_dir(
    music_dir: Path,
    *,
    enable_filter: bool,
    min_duration: float,
    max_duration: float,
) -> Path:
    if not enable_filter:
        return music_dir
    return filtered_music_dir(music_dir, min_duration, max_duration)


def filter_audio_by_duration(
    ffprobe_bin: str,
    music_dir: Path,
    *,
    min_duration: float,
    max_duration: float,
) -> AudioFilterResult:
    """Copy tracks within [min, max] seconds into `music/<min>-<max>/`, replacing its contents."""
    if min_duration < 0 or max_duration < min_duration:
        raise ValueError("Audio duration range must satisfy 0 <= min <= max.")

    target_dir = filtered_music_dir(music_dir, min_duration, max_duration)
    target_dir.mkdir(parents=True, exist_ok=True)
    for stale in target_dir.iterdir():
        if stale.is_file():
            stale.unlink()

    accepted: list[str] = []
    rejected: list[str] = []
    unreadable: list[str] = []
    for track in list_audio_files(music_dir):
        try:
            duration = get_media_duration(ffprobe_bin, track)
        except ProbeFailure as exc:
            progress_write(f"Warning: skipping {track.name}: {exc}")
            unreadable.append(track.name)
            continue

        if min_duration <= duration <= max_duration:
            shutil.copy2(track, target_dir / track.name)
            accepted.append(track.name)
        else:
            rejected.append(track.name)

    return AudioFilterResult(
        target_dir=target_dir,
        accepted=accepted,
        rejected=rejected,
        unreadable=unreadable,
    )


def load_audio_track(ffprobe_bin: str, track_path: Path) -> AudioTrack:
    return AudioTrack(path=track_path, duration=get_media_duration(ffprobe_bin, track_path))
