"""Toolchain: binary resolution, subprocess wrapper, and encoder detection."""

from __future__ import annotations

import os
import platform
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

VIDEO_EXTENSIONS = (".mp4", ".mov", ".avi", ".mkv")
ENHANCE_VIDEO_EXTENSIONS = (".mp4", ".mkv", ".mov", ".avi", ".webm")
AUDIO_EXTENSIONS = (".aac", ".mp3", ".wav", ".m4a")

SUPPORTED_ENCODERS = ("libx264", "h264_nvenc", "h264_amf")


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    realesrgan_binary: Optional[Path] = None
    model_path: Optional[Path] = None


def progress_write(message: str) -> None:
    """Write a progress message without breaking active tqdm bars."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        timeout=timeout,
        cwd=str(cwd) if cwd is not None else None,
    )


def get_realesrgan_binary_name() -> str:
    """Return the expected Real-ESRGAN binary name for the current OS."""
    if platform.system().lower() == "windows":
        return "realesrgan-ncnn-vulkan.exe"
    return "realesrgan-ncnn-vulkan"


def find_bundled_realesrgan_binary(search_root: Path, binary_name: str) -> Optional[Path]:
    """Search `real/` and `Real-ESRGAN-ncnn-vulkan/` under the project root."""
    vendor_candidates = [
        search_root / "real",
        search_root / "Real-ESRGAN-ncnn-vulkan",
    ]

    for vendor_root in vendor_candidates:
        if not vendor_root.exists():
            continue

        candidates = sorted(vendor_root.rglob(binary_name))
        for candidate in candidates:
            if not candidate.is_file():
                continue
            if platform.system().lower() == "windows":
                return candidate
            if os.access(candidate, os.X_OK):
                return candidate

    return None


def resolve_realesrgan_binary(
    custom_path: Optional[str],
    search_root: Optional[Path] = None,
) -> Path:
    """Resolve Real-ESRGAN binary from custom path, PATH, or vendored location."""
    if search_root is None:
        search_root = Path.cwd()

    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise FileNotFoundError(f"Real-ESRGAN binary not found at: {candidate}")
        return candidate

    binary_name = get_realesrgan_binary_name()

    system_binary = shutil.which(binary_name)
    if system_binary:
        return Path(system_binary).resolve()

    bundled_binary = find_bundled_realesrgan_binary(search_root, binary_name)
    if bundled_binary:
        return bundled_binary.resolve()

    raise FileNotFoundError(
        "Unable to locate Real-ESRGAN binary. Install it in PATH, unpack it "
        "under ./real, or pass --realesrgan-path explicitly."
    )


def resolve_model_path(
    custom_model_path: Optional[str],
    realesrgan_binary: Path,
) -> Optional[Path]:
    """Resolve model directory from explicit value or binary-adjacent models folder."""
    if custom_model_path:
        model_dir = Path(custom_model_path).expanduser().resolve()
        if not model_dir.is_dir():
            raise FileNotFoundError(f"Model directory not found: {model_dir}")
        return model_dir

    sibling_models = realesrgan_binary.parent / "models"
    if sibling_models.is_dir():
        return sibling_models.resolve()
    return None


def resolve_toolchain(
    *,
    need_realesrgan: bool = False,
    realesrgan_path: Optional[str] = None,
    model_path: Optional[str] = None,
) -> Toolchain:
    """Resolve runtime binaries and raise clear dependency errors."""
    ffmpeg_bin = shutil.which("ffmpeg")
    ffprobe_bin = shutil.which("ffprobe")
    if not ffmpeg_bin or not ffprobe_bin:
        missing = []
        if not ffmpeg_bin:
            missing.append("ffmpeg")
        if not ffprobe_bin:
            missing.append("ffprobe")
        raise FileNotFoundError(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install it with your system package manager."
        )

    if not need_realesrgan:
        return Toolchain(ffmpeg=ffmpeg_bin, ffprobe=ffprobe_bin)

    realesrgan_binary = resolve_realesrgan_binary(realesrgan_path, Path.cwd())
    return Toolchain(
        ffmpeg=ffmpeg_bin,
        ffprobe=ffprobe_bin,
        realesrgan_binary=realesrgan_binary,
        model_path=resolve_model_path(model_path, realesrgan_binary),
    )


# ── Encoder detection ──────────────────────────────────────────────────────────

_ENCODER_FALLBACKS = {
    "h264_amf": ("h264_amf", "h264_nvenc", "libx264"),
    "h264_nvenc": ("h264_nvenc", "h264_amf", "libx264"),
    "libx264": ("libx264", "h264_amf", "h264_nvenc"),
}

_resolved_encoders: dict[tuple[str, str], str] = {}


def list_ffmpeg_encoders(ffmpeg_bin: str) -> str:
    result = run_subprocess(
        [ffmpeg_bin, "-hide_banner", "-encoders"],
        check=False,
        capture_output=True,
        timeout=30,
    )
    return (result.stdout or "") + (result.stderr or "")


def choose_encoder(preferred: str, encoders_listing: str) -> str:
    """Pick the first available encoder from the fallback chain of `preferred`."""
    chain = _ENCODER_FALLBACKS.get(preferred.lower(), _ENCODER_FALLBACKS["libx264"])
    for name in chain:
        if re.search(rf"\b{re.escape(name)}\b", encoders_listing, re.IGNORECASE):
            return name
    return "libx264"


def detect_video_encoder(ffmpeg_bin: str, preferred: str) -> str:
    """Resolve the preferred H.264 encoder once per process."""
    key = (ffmpeg_bin, preferred)
    if key in _resolved_encoders:
        return _resolved_encoders[key]

    try:
        listing = list_ffmpeg_encoders(ffmpeg_bin)
    except (OSError, subprocess.TimeoutExpired):
        progress_write("Warning: unable to list ffmpeg encoders, using libx264.")
        listing = ""

    encoder = choose_encoder(preferred, listing)
    if encoder != preferred:
        progress_write(f"Encoder fallback: {preferred} -> {encoder}")
    _resolved_encoders[key] = encoder
    return encoder


def build_video_codec_args(
    encoder: str,
    *,
    preset: str = "veryfast",
    nvenc_preset: str = "p5",
    threads: int = 0,
) -> list[str]:
    if encoder == "h264_nvenc":
        return ["-c:v", "h264_nvenc", "-preset", nvenc_preset]
    if encoder == "h264_amf":
        return ["-c:v", "h264_amf"]
    if encoder != "libx264":
        raise ValueError(f"Unsupported encoder: {encoder}")
    args = ["-c:v", "libx264", "-preset", preset]
    if threads > 0:
        args.extend(["-threads", str(threads)])
    return args
