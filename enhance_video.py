"""Real-ESRGAN enhancement with a resumable frame-level fallback.

Each video is first handed to the upscaler whole. When the upscaler rejects
the output path (a known limitation of some ncnn-vulkan builds for video
containers), the job falls back to: extract audio, extract frames, upscale the
frames with N workers while checkpointing every finished frame, rebuild the
video at the source frame rate and mux the audio back.
"""

from __future__ import annotations

import json
import re
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from errors import OperationCancelled, OperationFailure
from executor import OperationLog, StopToken, run_logged
from media_probe import get_video_fps
from toolchain import ENHANCE_VIDEO_EXTENSIONS, Toolchain, progress_write

FRAME_PATTERN = "frame_%06d.png"
FRAME_GLOB = "frame_*.png"
CHECKPOINT_FILENAME = "checkpoint.json"
TEMP_DIR_PREFIX = ".realesrgan_tmp_"
AUDIO_COPY_NAME = "audio_track.mka"
AUDIO_TRANSCODE_NAME = "audio_track.m4a"


@dataclass(frozen=True)
class EnhanceSettings:
    model: str = "realesrgan-x4plus"
    scale: int = 4
    jobs: int = 1
    resume: bool = True
    suffix: str = "_enhanced"
    target_width: Optional[int] = None
    target_height: Optional[int] = None
    scale_flags: str = "lanczos"
    gpu_id: Optional[str] = None
    tile_size: Optional[int] = None
    direct_timeout: float = 6 * 3600.0
    frame_timeout: float = 300.0
    ffmpeg_timeout: float = 3600.0
    video_codec_args: tuple[str, ...] = ("-c:v", "libx264", "-preset", "veryfast")


# ── Upscaler failure classification ──────────────────────────────────────────


class FailureCategory(str, Enum):
    """Recognized ways a direct whole-video upscale can fail."""

    INVALID_OUTPUT_PATH = "invalid_output_path"
    LAUNCH_FAILED = "launch_failed"
    UNRECOGNIZED = "unrecognized"


# Matched against the upscaler's stderr+stdout. These strings come from the
# ncnn-vulkan build and may change between releases.
_FAILURE_PATTERNS: tuple[tuple[FailureCategory, re.Pattern[str]], ...] = (
    (FailureCategory.INVALID_OUTPUT_PATH, re.compile(r"invalid output(?:\s*path)?", re.IGNORECASE)),
)

FRAME_FALLBACK_CATEGORIES = frozenset(
    {FailureCategory.INVALID_OUTPUT_PATH, FailureCategory.LAUNCH_FAILED}
)


def classify_upscaler_failure(failure: OperationFailure) -> FailureCategory:
    if failure.returncode is None and not failure.stderr and not failure.stdout:
        return FailureCategory.LAUNCH_FAILED
    diagnostics = f"{failure.stderr}\n{failure.stdout}"
    for category, pattern in _FAILURE_PATTERNS:
        if pattern.search(diagnostics):
            return category
    return FailureCategory.UNRECOGNIZED


# ── Commands ──────────────────────────────────────────────────────────────────


def build_realesrgan_command(
    realesrgan_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale_factor: int,
    model_name: str,
    output_format: str,
    model_path: Optional[Path] = None,
    gpu_id: Optional[str] = None,
    tile_size: Optional[int] = None,
) -> list[str]:
    cmd = [
        str(realesrgan_binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-n",
        model_name,
        "-s",
        str(scale_factor),
        "-f",
        output_format,
    ]

    if model_path is not None:
        cmd.extend(["-m", str(model_path)])

    if gpu_id:
        cmd.extend(["-g", gpu_id])

    if tile_size is not None:
        cmd.extend(["-t", str(tile_size)])

    return cmd


def enhanced_output_name(input_video: Path, suffix: str) -> str:
    return f"{input_video.stem}{suffix}.mp4"


def job_temp_dir(output_dir: Path, input_video: Path) -> Path:
    """Stable per-input work directory so an interrupted job can be resumed."""
    return output_dir / f"{TEMP_DIR_PREFIX}{input_video.stem}"


def run_direct_enhance(
    toolchain: Toolchain,
    input_video: Path,
    output_dir: Path,
    output_name: str,
    settings: EnhanceSettings,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
) -> Optional[FailureCategory]:
    """Upscale the whole video in one upscaler call.

    Returns None on success or the failure category when the frame fallback
    applies. Unrecognized failures are re-raised.
    """
    cmd = build_realesrgan_command(
        toolchain.realesrgan_binary,
        input_video.resolve(),
        Path(output_name),
        scale_factor=settings.scale,
        model_name=settings.model,
        output_format="mp4",
        model_path=toolchain.model_path,
        gpu_id=settings.gpu_id,
        tile_size=settings.tile_size,
    )
    try:
        run_logged(
            cmd,
            f"enhance_{input_video.stem}_direct",
            oplog=oplog,
            timeout=settings.direct_timeout,
            output_path=output_dir / output_name,
            stop=stop,
            cwd=output_dir,
        )
    except OperationFailure as exc:
        category = classify_upscaler_failure(exc)
        if category not in FRAME_FALLBACK_CATEGORIES:
            raise
        return category
    return None


def extract_audio(
    ffmpeg_bin: str,
    input_video: Path,
    temp_dir: Path,
    *,
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> Optional[Path]:
    """Copy the first audio stream out losslessly, transcoding only if copy fails."""
    copy_target = temp_dir / AUDIO_COPY_NAME
    copy_cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "warning", "-nostdin",
        "-i", str(input_video),
        "-vn", "-map", "0:a:0", "-c:a", "copy",
        "-y", str(copy_target),
    ]
    try:
        run_logged(copy_cmd, f"enhance_{input_video.stem}_audio", oplog=oplog,
                   timeout=timeout, output_path=copy_target, stop=stop)
        return copy_target
    except OperationFailure:
        pass

    transcode_target = temp_dir / AUDIO_TRANSCODE_NAME
    transcode_cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "warning", "-nostdin",
        "-i", str(input_video),
        "-vn", "-map", "0:a:0", "-c:a", "aac", "-b:a", "192k",
        "-y", str(transcode_target),
    ]
    try:
        run_logged(transcode_cmd, f"enhance_{input_video.stem}_audio", oplog=oplog,
                   timeout=timeout, output_path=transcode_target, stop=stop)
        return transcode_target
    except OperationFailure:
        progress_write(f"Warning: no usable audio in {input_video.name}. Continuing without audio.")
        return None


def existing_audio(temp_dir: Path) -> Optional[Path]:
    for name in (AUDIO_COPY_NAME, AUDIO_TRANSCODE_NAME):
        candidate = temp_dir / name
        if candidate.exists() and candidate.stat().st_size > 0:
            return candidate
    return None


def extract_frames(
    ffmpeg_bin: str,
    input_video: Path,
    frames_dir: Path,
    *,
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> int:
    """Extract every frame as PNG; returns the frame count."""
    frames_dir.mkdir(parents=True, exist_ok=True)
    for stale in frames_dir.glob(FRAME_GLOB):
        stale.unlink()
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "warning", "-nostdin",
        "-i", str(input_video),
        "-fps_mode", "passthrough",
        "-start_number", "1",
        "-y", str(frames_dir / FRAME_PATTERN),
    ]
    run_logged(cmd, f"enhance_{input_video.stem}_frames", oplog=oplog, timeout=timeout, stop=stop)

    frame_count = len(list(frames_dir.glob(FRAME_GLOB)))
    if frame_count == 0:
        raise OperationFailure(f"Frame extraction produced zero frames for {input_video.name}.")
    return frame_count


# ── Checkpoint and workers ───────────────────────────────────────────────────


class Checkpoint:
    """`{"done": {frame name: true}}` persisted after every finished frame.

    Updates are serialized by a lock and each one rewrites the whole file, so
    concurrent workers never lose each other's entries.
    """

    def __init__(self, path: Path, done: Optional[dict[str, bool]] = None) -> None:
        self.path = path
        self._done: dict[str, bool] = dict(done or {})
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Path, *, resume: bool) -> Checkpoint:
        if not resume or not path.exists():
            return cls(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            progress_write(f"Warning: unreadable checkpoint {path}, starting over.")
            return cls(path)
        done = payload.get("done") if isinstance(payload, dict) else None
        if not isinstance(done, dict):
            return cls(path)
        return cls(path, {str(name): True for name, flag in done.items() if flag})

    def is_done(self, frame_name: str) -> bool:
        with self._lock:
            return self._done.get(frame_name, False)

    @property
    def done_count(self) -> int:
        with self._lock:
            return len(self._done)

    def pending(self, frame_names: Sequence[str]) -> list[str]:
        with self._lock:
            return [name for name in frame_names if not self._done.get(name)]

    def mark_done(self, frame_name: str) -> None:
        with self._lock:
            self._done[frame_name] = True
            temp_path = self.path.with_suffix(".json.tmp")
            temp_path.write_text(json.dumps({"done": self._done}, indent=2), encoding="utf-8")
            temp_path.replace(self.path)


@dataclass
class FrameRunStats:
    total: int
    already_done: int
    processed: int = 0
    recovered: int = 0
    recovered_frames: list[str] = field(default_factory=list)


def run_frame_workers(
    toolchain: Toolchain,
    frames_dir: Path,
    enhanced_dir: Path,
    checkpoint: Checkpoint,
    settings: EnhanceSettings,
    *,
    oplog: OperationLog,
    log_name: str,
    stop: Optional[StopToken] = None,
) -> FrameRunStats:
    """Upscale every frame not yet in the checkpoint with `settings.jobs` workers.

    A frame the upscaler fails on is replaced by a copy of the source frame so
    one bad frame never aborts the job. A stop request aborts the whole run and
    leaves the checkpoint for a later resume.
    """
    enhanced_dir.mkdir(parents=True, exist_ok=True)
    frame_names = sorted(path.name for path in frames_dir.glob(FRAME_GLOB))
    if not frame_names:
        raise OperationFailure(f"No frames found in {frames_dir}.")

    pending = checkpoint.pending(frame_names)
    stats = FrameRunStats(total=len(frame_names), already_done=len(frame_names) - len(pending))
    queue_lock = threading.Lock()
    next_index = 0

    def take_next() -> Optional[str]:
        nonlocal next_index
        with queue_lock:
            if next_index >= len(pending):
                return None
            name = pending[next_index]
            next_index += 1
            return name

    def worker(bar: tqdm) -> None:
        while True:
            if stop is not None and stop.stopped:
                return
            name = take_next()
            if name is None:
                return
            source = frames_dir / name
            target = enhanced_dir / name
            cmd = build_realesrgan_command(
                toolchain.realesrgan_binary,
                source,
                target,
                scale_factor=settings.scale,
                model_name=settings.model,
                output_format="png",
                model_path=toolchain.model_path,
                gpu_id=settings.gpu_id,
                tile_size=settings.tile_size,
            )
            recovered = False
            try:
                run_logged(cmd, log_name, oplog=oplog, timeout=settings.frame_timeout,
                           output_path=target, stop=stop, cwd=enhanced_dir.parent)
            except OperationFailure as exc:
                progress_write(f"Warning: enhancement failed for {name}, keeping original frame: {exc}")
                recovered = True
            if not recovered and not target.exists():
                progress_write(f"Warning: no output for {name}, keeping original frame.")
                recovered = True
            if recovered:
                shutil.copy2(source, target)

            checkpoint.mark_done(name)
            with queue_lock:
                stats.processed += 1
                if recovered:
                    stats.recovered += 1
                    stats.recovered_frames.append(name)
            bar.update(1)

    worker_count = max(1, settings.jobs)
    with tqdm(total=stats.total, initial=stats.already_done, desc="Enhancing", unit="frame") as bar:
        with ThreadPoolExecutor(max_workers=worker_count) as pool:
            futures = [pool.submit(worker, bar) for _ in range(worker_count)]
            for future in futures:
                future.result()

    if stop is not None and stop.stopped:
        raise OperationCancelled("Enhancement stopped; checkpoint kept for resume.")
    return stats


# ── Reassembly ───────────────────────────────────────────────────────────────


def reassemble_video(
    ffmpeg_bin: str,
    frames_dir: Path,
    output_video: Path,
    *,
    framerate: float,
    video_codec_args: Sequence[str],
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> None:
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "warning", "-nostdin",
        "-framerate", f"{framerate:g}",
        "-i", str(frames_dir / FRAME_PATTERN),
        "-map", "0:v:0",
        *video_codec_args,
        "-pix_fmt", "yuv420p",
        "-y", str(output_video),
    ]
    run_logged(cmd, f"enhance_{output_video.stem}_reassemble", oplog=oplog,
               timeout=timeout, output_path=output_video, stop=stop)


def mux_audio_to_video(
    ffmpeg_bin: str,
    video_path: Path,
    output_video: Path,
    *,
    audio_path: Optional[Path],
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> None:
    """Mux the extracted audio back, stopping at the shorter stream."""
    if audio_path is None or not audio_path.exists():
        shutil.move(str(video_path), str(output_video))
        return

    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "warning", "-nostdin",
        "-i", str(video_path),
        "-i", str(audio_path),
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-c:v", "copy",
        "-c:a", "aac",
        "-b:a", "192k",
        "-shortest",
        "-y", str(output_video),
    ]
    run_logged(cmd, f"enhance_{output_video.stem}_mux", oplog=oplog,
               timeout=timeout, output_path=output_video, stop=stop)


def build_scale_filter(
    target_width: Optional[int],
    target_height: Optional[int],
    scale_flags: str,
) -> Optional[str]:
    if target_width and target_height:
        return f"scale={target_width}:{target_height}:flags={scale_flags}"
    if target_width:
        return f"scale={target_width}:-2:flags={scale_flags}"
    if target_height:
        return f"scale=-2:{target_height}:flags={scale_flags}"
    return None


def post_scale(
    ffmpeg_bin: str,
    video_path: Path,
    settings: EnhanceSettings,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
) -> bool:
    """Resize the finished output in place to the requested target size."""
    scale_filter = build_scale_filter(settings.target_width, settings.target_height, settings.scale_flags)
    if scale_filter is None:
        return False

    scaled = video_path.with_name(f"{video_path.stem}_scaled{video_path.suffix}")
    progress_write(f"Post-scaling {video_path.name} ({scale_filter})")
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "warning", "-nostdin",
        "-i", str(video_path),
        "-vf", scale_filter,
        *settings.video_codec_args,
        "-c:a", "copy",
        "-y", str(scaled),
    ]
    run_logged(cmd, f"enhance_{video_path.stem}_postscale", oplog=oplog,
               timeout=settings.ffmpeg_timeout, output_path=scaled, stop=stop)
    scaled.replace(video_path)
    return True


# ── Jobs ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EnhanceResult:
    input_video: Path
    output_video: Path
    mode: str
    frames: Optional[FrameRunStats] = None


def run_frame_fallback(
    toolchain: Toolchain,
    input_video: Path,
    output_video: Path,
    settings: EnhanceSettings,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
) -> FrameRunStats:
    temp_dir = job_temp_dir(output_video.parent, input_video)
    frames_dir = temp_dir / "frames"
    enhanced_dir = temp_dir / "enhanced"
    temp_dir.mkdir(parents=True, exist_ok=True)
    timeout = settings.ffmpeg_timeout

    has_frames = any(frames_dir.glob(FRAME_GLOB)) if frames_dir.is_dir() else False
    if settings.resume and has_frames:
        progress_write("Reusing extracted frames from the previous run.")
    else:
        shutil.rmtree(enhanced_dir, ignore_errors=True)
        (temp_dir / CHECKPOINT_FILENAME).unlink(missing_ok=True)
        progress_write("Extracting frames...")
        extract_frames(toolchain.ffmpeg, input_video, frames_dir, oplog=oplog, timeout=timeout, stop=stop)

    audio_path = existing_audio(temp_dir) if settings.resume else None
    if audio_path is not None:
        progress_write("Reusing extracted audio from the previous run.")
    else:
        progress_write("Extracting audio...")
        audio_path = extract_audio(toolchain.ffmpeg, input_video, temp_dir, oplog=oplog, timeout=timeout, stop=stop)

    checkpoint = Checkpoint.load(temp_dir / CHECKPOINT_FILENAME, resume=settings.resume)
    stats = run_frame_workers(
        toolchain,
        frames_dir,
        enhanced_dir,
        checkpoint,
        settings,
        oplog=oplog,
        log_name=f"enhance_{input_video.stem}_frame",
        stop=stop,
    )
    progress_write(
        f"Frames: {stats.total} total, {stats.already_done} from checkpoint, "
        f"{stats.processed} processed, {stats.recovered} kept unscaled."
    )

    fps = get_video_fps(toolchain.ffprobe, input_video)
    silent_video = temp_dir / "video_noaudio.mp4"
    progress_write(f"Rebuilding video at {fps:g} fps...")
    reassemble_video(toolchain.ffmpeg, enhanced_dir, silent_video, framerate=fps,
                     video_codec_args=settings.video_codec_args, oplog=oplog,
                     timeout=timeout, stop=stop)
    mux_audio_to_video(toolchain.ffmpeg, silent_video, output_video, audio_path=audio_path,
                       oplog=oplog, timeout=timeout, stop=stop)

    shutil.rmtree(temp_dir, ignore_errors=True)
    return stats


def enhance_one(
    toolchain: Toolchain,
    input_video: Path,
    output_dir: Path,
    settings: EnhanceSettings,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
) -> EnhanceResult:
    output_dir = output_dir.resolve()
    output_dir.mkdir(parents=True, exist_ok=True)
    output_name = enhanced_output_name(input_video, settings.suffix)
    output_video = output_dir / output_name
    print(f"\nProcessing: {input_video.name}")

    category = run_direct_enhance(toolchain, input_video, output_dir, output_name, settings, oplog=oplog, stop=stop)
    if category is None:
        post_scale(toolchain.ffmpeg, output_video, settings, oplog=oplog, stop=stop)
        return EnhanceResult(input_video=input_video, output_video=output_video, mode="direct")

    progress_write(f"Direct mode failed ({category.value}); falling back to frame mode.")
    stats = run_frame_fallback(toolchain, input_video, output_video, settings, oplog=oplog, stop=stop)
    post_scale(toolchain.ffmpeg, output_video, settings, oplog=oplog, stop=stop)
    return EnhanceResult(input_video=input_video, output_video=output_video, mode="frames", frames=stats)


def find_videos(input_path: Path) -> list[Path]:
    if input_path.is_dir():
        return sorted(
            path
            for path in input_path.iterdir()
            if path.is_file() and path.suffix.lower() in ENHANCE_VIDEO_EXTENSIONS
        )
    if input_path.is_file() and input_path.suffix.lower() in ENHANCE_VIDEO_EXTENSIONS:
        return [input_path]
    return []


@dataclass
class EnhanceBatchReport:
    results: list[EnhanceResult] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)


def run_enhance_batch(
    toolchain: Toolchain,
    input_path: Path,
    output_dir: Path,
    settings: EnhanceSettings,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
) -> EnhanceBatchReport:
    """Enhance one file or every video in a directory, one at a time."""
    if settings.jobs < 1:
        raise ValueError("--jobs must be >= 1.")
    if not input_path.exists():
        raise FileNotFoundError(f"Input path does not exist: {input_path}")

    videos = find_videos(input_path)
    report = EnhanceBatchReport()
    if not videos:
        print("No videos to enhance.")
        return report

    print(f"Found {len(videos)} video(s) to enhance.")
    for video in tqdm(videos, desc="Videos", unit="video"):
        try:
            result = enhance_one(toolchain, video, output_dir, settings, oplog=oplog, stop=stop)
        except OperationFailure as exc:
            progress_write(f"Error: enhancement of {video.name} failed: {exc}")
            report.failed.append((video, str(exc)))
            continue
        report.results.append(result)
        progress_write(f"Done: {result.output_video.name} ({result.mode})")

    print(f"Enhanced {len(report.results)} of {len(videos)} video(s).")
    for video, reason in report.failed:
        print(f"  Failed: {video.name}: {reason}")
    return report
