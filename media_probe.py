"""ffprobe helpers returning parsed media metadata."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import ProbeFailure
from toolchain import run_subprocess

DEFAULT_FPS = 25.0
PROBE_TIMEOUT_SECONDS = 60
FRAME_LIST_TIMEOUT_SECONDS = 600


@dataclass(frozen=True)
class VideoInfo:
    framerate: float
    width: int
    height: int
    audio_codec: Optional[str]
    has_audio: bool
    duration_seconds: float


def parse_framerate(value: str, default: float = DEFAULT_FPS) -> float:
    """Parse ffprobe framerate strings like 30000/1001 safely."""
    if not value:
        return default

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return default
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError):
        return default

    if framerate <= 0 or framerate > 240:
        return default
    return framerate


def probe_json(ffprobe_bin: str, media_path: Path) -> dict:
    """Run ffprobe on a file and return its JSON payload."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(media_path),
    ]
    try:
        result = run_subprocess(
            cmd,
            check=False,
            capture_output=True,
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired as exc:
        raise ProbeFailure(f"ffprobe timed out on {media_path.name}") from exc
    except OSError as exc:
        raise ProbeFailure(f"ffprobe could not run: {exc}") from exc

    if result.returncode != 0:
        stderr = (result.stderr or "").strip() or f"exit={result.returncode}"
        raise ProbeFailure(f"ffprobe failed on {media_path.name}: {stderr}")

    try:
        payload = json.loads(result.stdout or "")
    except json.JSONDecodeError as exc:
        raise ProbeFailure(f"Failed to parse ffprobe output for {media_path.name}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ProbeFailure(f"Unexpected ffprobe payload for {media_path.name}")
    return payload


def get_video_info(ffprobe_bin: str, input_video: Path) -> VideoInfo:
    """Read metadata with ffprobe and return parsed info."""
    payload = probe_json(ffprobe_bin, input_video)

    video_stream = None
    audio_stream = None
    for stream in payload.get("streams", []):
        stream_type = stream.get("codec_type")
        if stream_type == "video" and video_stream is None:
            video_stream = stream
        elif stream_type == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        raise ProbeFailure(f"No video stream found in {input_video.name}.")

    framerate = parse_framerate(
        video_stream.get("r_frame_rate") or video_stream.get("avg_frame_rate", "")
    )
    duration_raw = (
        video_stream.get("duration")
        or payload.get("format", {}).get("duration")
        or "0"
    )
    try:
        duration_seconds = max(float(duration_raw), 0.0)
    except (TypeError, ValueError):
        duration_seconds = 0.0

    return VideoInfo(
        framerate=framerate,
        width=int(video_stream.get("width", 0) or 0),
        height=int(video_stream.get("height", 0) or 0),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        has_audio=audio_stream is not None,
        duration_seconds=duration_seconds,
    )


def get_media_duration(ffprobe_bin: str, media_path: Path) -> float:
    """Return container duration in seconds; raises ProbeFailure when unknown."""
    payload = probe_json(ffprobe_bin, media_path)
    raw = payload.get("format", {}).get("duration")
    if raw is None:
        for stream in payload.get("streams", []):
            if stream.get("duration"):
                raw = stream["duration"]
                break
    try:
        duration = float(raw)
    except (TypeError, ValueError) as exc:
        raise ProbeFailure(f"No duration reported for {media_path.name}") from exc
    if duration <= 0:
        raise ProbeFailure(f"Non-positive duration for {media_path.name}: {duration}")
    return duration


def get_video_fps(ffprobe_bin: str, input_video: Path) -> float:
    """Best-effort frame rate, DEFAULT_FPS when probing fails."""
    try:
        return get_video_info(ffprobe_bin, input_video).framerate
    except ProbeFailure:
        return DEFAULT_FPS


def get_video_dimensions(ffprobe_bin: str, input_video: Path) -> tuple[int, int]:
    """Return (width, height); (0, 0) when probing fails."""
    try:
        info = get_video_info(ffprobe_bin, input_video)
    except ProbeFailure:
        return 0, 0
    return info.width, info.height


def get_frame_times(ffprobe_bin: str, input_video: Path) -> list[float]:
    """Presentation time of every decoded video frame, indexed by frame number."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_frames",
        "-show_entries",
        "frame=pts_time,pkt_dts_time,best_effort_timestamp_time",
        "-print_format",
        "json",
        str(input_video),
    ]
    try:
        result = run_subprocess(cmd, check=False, capture_output=True, timeout=FRAME_LIST_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired as exc:
        raise ProbeFailure(f"ffprobe timed out listing frames of {input_video.name}") from exc
    except OSError as exc:
        raise ProbeFailure(f"ffprobe could not run: {exc}") from exc

    if result.returncode != 0:
        stderr = (result.stderr or "").strip() or f"exit={result.returncode}"
        raise ProbeFailure(f"ffprobe failed listing frames of {input_video.name}: {stderr}")
    try:
        payload = json.loads(result.stdout or "")
    except json.JSONDecodeError as exc:
        raise ProbeFailure(f"Failed to parse frame list for {input_video.name}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ProbeFailure(f"Unexpected frame list for {input_video.name}")

    times: list[float] = []
    for frame in payload.get("frames", []):
        raw = frame.get("pts_time") or frame.get("best_effort_timestamp_time") or frame.get("pkt_dts_time")
        try:
            times.append(float(raw))
        except (TypeError, ValueError):
            continue
    return times
