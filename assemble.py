"""Assembly encode stages and the compose batch loop."""

from __future__ import annotations

import hashlib
import logging
import math
import random
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from audio_pool import AudioTrack, list_audio_files, load_audio_track
from batch_state import SYNTHESIS_LOG_FILENAME, BatchState, SynthesisLog, next_output_index
from errors import (
    EncodeStageFailure,
    OperationFailure,
    ProbeFailure,
    ReconciliationExhausted,
)
from executor import OperationLog, StopToken, run_logged, run_variants
from media_probe import get_media_duration, get_video_dimensions
from reconcile import (
    Adjustment,
    ClipCandidate,
    Decision,
    ReconcileBounds,
    ReconcilePlan,
    classify_total,
    reconcile,
)
from toolchain import Toolchain, progress_write

logger = logging.getLogger("scene_montage.compose")

STAGE_CONCAT = "concat"
STAGE_RATE = "rate"
STAGE_TAIL_TRIM = "tail_trim"
STAGE_MUX = "mux"
STAGE_HARD_TRIM = "hard_trim"
STAGE_REMUX = "remux"

TEMP_CLIPS_DIRNAME = "temp_clips"
RESIZED_CLIPS_DIRNAME = "_resized_clips"
BATCH_LOG_FILENAME = "log.log"


@dataclass(frozen=True)
class ComposeSettings:
    clips_dir: Path
    open_dir: Path
    music_dir: Path
    output_dir: Path
    music_dir_root: Optional[Path] = None
    num_videos: int = 3
    open_clips_count: int = 1
    video_name_prefix: str = "myvideo"
    bounds: ReconcileBounds = field(default_factory=ReconcileBounds)
    stage_timeout: float = 120.0
    video_codec_args: tuple[str, ...] = ("-c:v", "libx264", "-preset", "veryfast")
    copy_on_mux: bool = True
    remux_copy: bool = True
    resize_min_width: int = 0
    resize_min_height: int = 0


@dataclass
class BatchReport:
    batch_dir: Path
    successes: list[tuple[str, float]] = field(default_factory=list)
    skipped: int = 0
    failures: int = 0
    retries: int = 0
    aborted: bool = False


def _emit(message: str, level: int = logging.INFO) -> None:
    progress_write(message)
    logger.log(level, message)


# ── Encode stages ─────────────────────────────────────────────────────────────


def write_concat_list(clips: Sequence[Path], list_path: Path) -> Path:
    lines = []
    for clip in clips:
        if not clip.exists():
            raise FileNotFoundError(f"Clip file does not exist: {clip}")
        escaped = str(clip.resolve()).replace("\\", "/").replace("'", r"'\''")
        lines.append(f"file '{escaped}'")
    list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return list_path


def build_concat_variants(
    ffmpeg_bin: str,
    list_path: Path,
    output_path: Path,
    video_codec_args: Sequence[str],
) -> list[list[str]]:
    head = [ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-nostdin",
            "-f", "concat", "-safe", "0", "-i", str(list_path)]
    audio_args = ["-c:a", "aac", "-ar", "44100", "-ac", "2", "-b:a", "192k"]
    copy = head + ["-c:v", "copy"] + audio_args + ["-movflags", "+faststart", "-y", str(output_path)]
    # Clips whose stream parameters differ only concatenate after a re-encode.
    reencode = (
        head
        + list(video_codec_args)
        + ["-pix_fmt", "yuv420p"]
        + audio_args
        + ["-movflags", "+faststart", "-y", str(output_path)]
    )
    return [copy, reencode]


def concat_segments(
    ffmpeg_bin: str,
    clips: Sequence[Path],
    output_path: Path,
    *,
    list_path: Path,
    video_codec_args: Sequence[str],
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> None:
    write_concat_list(clips, list_path)
    try:
        run_variants(
            lambda _: build_concat_variants(ffmpeg_bin, list_path, output_path, video_codec_args),
            list_path,
            f"concat_{output_path.stem}",
            oplog=oplog,
            timeout=timeout,
            output_path=output_path,
            stop=stop,
        )
    finally:
        list_path.unlink(missing_ok=True)


def apply_rate(
    ffmpeg_bin: str,
    input_path: Path,
    output_path: Path,
    *,
    rate: float,
    video_codec_args: Sequence[str],
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> None:
    """Scale presentation timestamps by `rate` (> 1 lengthens, < 1 shortens)."""
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-nostdin",
        "-i", str(input_path),
        "-filter:v", f"setpts={rate:.6f}*PTS",
        "-an",
        *video_codec_args,
        "-y", str(output_path),
    ]
    run_logged(cmd, f"rate_{output_path.stem}", oplog=oplog, timeout=timeout,
               output_path=output_path, stop=stop)


def trim_tail(
    ffmpeg_bin: str,
    input_path: Path,
    output_path: Path,
    *,
    keep_seconds: float,
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> None:
    """Keep the first `keep_seconds` of the assembled video."""
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-nostdin",
        "-i", str(input_path),
        "-t", f"{keep_seconds:.6f}",
        "-c", "copy",
        "-y", str(output_path),
    ]
    run_logged(cmd, f"tail_trim_{output_path.stem}", oplog=oplog, timeout=timeout,
               output_path=output_path, stop=stop)


def mux_audio(
    ffmpeg_bin: str,
    video_path: Path,
    audio_path: Path,
    output_path: Path,
    *,
    video_codec_args: Sequence[str],
    copy_video: bool,
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> None:
    if not audio_path.exists():
        raise FileNotFoundError(f"Audio file does not exist: {audio_path}")
    video_args = ["-c:v", "copy"] if copy_video else list(video_codec_args)
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-nostdin",
        "-i", str(video_path),
        "-i", str(audio_path),
        "-map", "0:v:0",
        "-map", "1:a:0",
        *video_args,
        "-c:a", "aac",
        "-strict", "-2",
        "-shortest",
        "-y", str(output_path),
    ]
    run_logged(cmd, f"mux_{output_path.stem}", oplog=oplog, timeout=timeout,
               output_path=output_path, stop=stop)


def _copy_or_encode(copy: bool, video_codec_args: Sequence[str]) -> list[str]:
    if copy:
        return ["-c", "copy"]
    return [*video_codec_args, "-c:a", "aac"]


def hard_trim(
    ffmpeg_bin: str,
    input_path: Path,
    output_path: Path,
    *,
    duration: float,
    copy: bool,
    video_codec_args: Sequence[str],
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> None:
    """Cut the muxed file to exactly the audio duration so no frame freezes at the end."""
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-nostdin",
        "-i", str(input_path),
        "-t", f"{duration:.6f}",
        *_copy_or_encode(copy, video_codec_args),
        "-y", str(output_path),
    ]
    run_logged(cmd, f"hard_trim_{output_path.stem}", oplog=oplog, timeout=timeout,
               output_path=output_path, stop=stop)


def remux_normalize(
    ffmpeg_bin: str,
    input_path: Path,
    output_path: Path,
    *,
    copy: bool,
    video_codec_args: Sequence[str],
    oplog: OperationLog,
    timeout: float,
    stop: Optional[StopToken] = None,
) -> None:
    """Rewrite the container once more to rebuild a clean index."""
    cmd = [
        ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-nostdin",
        "-i", str(input_path),
        *_copy_or_encode(copy, video_codec_args),
        "-movflags", "+faststart",
        "-y", str(output_path),
    ]
    run_logged(cmd, f"remux_{output_path.stem}", oplog=oplog, timeout=timeout,
               output_path=output_path, stop=stop)


def tail_keep_seconds(
    intro_durations: Sequence[float],
    plan: ReconcilePlan,
) -> Optional[float]:
    """Length to keep when the plan trims its last clip, intro clips included."""
    if plan.trim_last_to is None:
        return None
    before_last = sum(clip.duration for clip in plan.clips[:-1])
    return sum(intro_durations) + before_last + plan.trim_last_to


def assemble_plan(
    toolchain: Toolchain,
    plan: ReconcilePlan,
    clip_paths: Sequence[Path],
    audio: AudioTrack,
    output_path: Path,
    *,
    work_dir: Path,
    settings: ComposeSettings,
    oplog: OperationLog,
    intro_durations: Sequence[float] = (),
    stop: Optional[StopToken] = None,
) -> None:
    """Run the encode stages for one plan; any stage failure abandons the assembly."""
    work_dir.mkdir(parents=True, exist_ok=True)
    token = f"{output_path.stem}_{int(time.time() * 1000)}"
    concat_out = work_dir / f"temp_concat_{token}.mp4"
    rate_out = work_dir / f"temp_rate_{token}.mp4"
    tail_out = work_dir / f"temp_tail_{token}.mp4"
    mux_out = work_dir / f"temp_mux_{token}.mp4"
    cut_out = work_dir / f"temp_cut_{token}.mp4"
    temporaries = [concat_out, rate_out, tail_out, mux_out, cut_out]
    codec_args = settings.video_codec_args
    timeout = settings.stage_timeout

    stage = STAGE_CONCAT
    try:
        concat_segments(
            toolchain.ffmpeg, clip_paths, concat_out,
            list_path=work_dir / f"concat_list_{token}.txt",
            video_codec_args=codec_args, oplog=oplog, timeout=timeout, stop=stop,
        )
        current = concat_out

        if not math.isclose(plan.rate, 1.0):
            stage = STAGE_RATE
            apply_rate(toolchain.ffmpeg, current, rate_out, rate=plan.rate,
                       video_codec_args=codec_args, oplog=oplog, timeout=timeout, stop=stop)
            current = rate_out

        keep_seconds = tail_keep_seconds(intro_durations, plan)
        if keep_seconds is not None:
            stage = STAGE_TAIL_TRIM
            trim_tail(toolchain.ffmpeg, current, tail_out, keep_seconds=keep_seconds,
                      oplog=oplog, timeout=timeout, stop=stop)
            current = tail_out

        stage = STAGE_MUX
        mux_audio(toolchain.ffmpeg, current, audio.path, mux_out,
                  video_codec_args=codec_args, copy_video=settings.copy_on_mux,
                  oplog=oplog, timeout=timeout, stop=stop)

        stage = STAGE_HARD_TRIM
        hard_trim(toolchain.ffmpeg, mux_out, cut_out, duration=audio.duration,
                  copy=settings.remux_copy, video_codec_args=codec_args,
                  oplog=oplog, timeout=timeout, stop=stop)

        stage = STAGE_REMUX
        remux_normalize(toolchain.ffmpeg, cut_out, output_path, copy=settings.remux_copy,
                        video_codec_args=codec_args, oplog=oplog, timeout=timeout, stop=stop)
    except (OperationFailure, FileNotFoundError) as exc:
        output_path.unlink(missing_ok=True)
        raise EncodeStageFailure(stage, exc) from exc
    finally:
        for temporary in temporaries:
            temporary.unlink(missing_ok=True)


# ── Minimum resolution ───────────────────────────────────────────────────────


def next_even(value: float) -> int:
    rounded = math.ceil(value)
    return rounded if rounded % 2 == 0 else rounded + 1


class ResolutionGuard:
    """Upscale clips below a minimum size, caching results per source path."""

    def __init__(
        self,
        toolchain: Toolchain,
        cache_dir: Path,
        *,
        min_width: int,
        min_height: int,
        video_codec_args: Sequence[str],
        oplog: OperationLog,
        timeout: float = 600.0,
    ) -> None:
        self.toolchain = toolchain
        self.cache_dir = cache_dir
        self.min_width = min_width
        self.min_height = min_height
        self.video_codec_args = list(video_codec_args)
        self.oplog = oplog
        self.timeout = timeout
        self._cache: dict[Path, Path] = {}

    @property
    def enabled(self) -> bool:
        return self.min_width > 0 and self.min_height > 0

    def ensure(self, clip_path: Path) -> Path:
        if not self.enabled:
            return clip_path
        if clip_path in self._cache:
            return self._cache[clip_path]

        width, height = get_video_dimensions(self.toolchain.ffprobe, clip_path)
        if not width or not height or (width >= self.min_width and height >= self.min_height):
            self._cache[clip_path] = clip_path
            return clip_path

        scale = max(self.min_width / width, self.min_height / height)
        out_width = next_even(width * scale)
        out_height = next_even(height * scale)
        digest = hashlib.sha1(str(clip_path.resolve()).encode("utf-8")).hexdigest()[:8]
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        resized = self.cache_dir / f"{clip_path.stem}_{digest}_{out_width}x{out_height}.mp4"
        if not resized.exists():
            cmd = [
                self.toolchain.ffmpeg, "-hide_banner", "-loglevel", "error", "-nostdin",
                "-i", str(clip_path),
                "-vf", f"scale={out_width}:{out_height}:flags=lanczos",
                "-an",
                *self.video_codec_args,
                "-y", str(resized),
            ]
            try:
                run_logged(cmd, f"resize_{clip_path.stem}", oplog=self.oplog,
                           timeout=self.timeout, output_path=resized)
            except OperationFailure as exc:
                _emit(f"Warning: upscale of {clip_path.name} failed, using original: {exc}",
                      logging.WARNING)
                self._cache[clip_path] = clip_path
                return clip_path

        self._cache[clip_path] = resized
        return resized


# ── Batch ─────────────────────────────────────────────────────────────────────


def list_clip_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() == ".mp4")


def load_clip_pool(ffprobe_bin: str, clips_dir: Path) -> list[ClipCandidate]:
    """Read every clip's duration once; unreadable clips are left out with a warning."""
    pool: list[ClipCandidate] = []
    for clip in list_clip_files(clips_dir):
        try:
            duration = get_media_duration(ffprobe_bin, clip)
        except ProbeFailure as exc:
            _emit(f"Warning: skipping clip {clip.name}: {exc}", logging.WARNING)
            continue
        pool.append(ClipCandidate(name=clip.stem, path=clip, duration=duration))
    return pool


def attach_batch_log(batch_dir: Path) -> logging.Handler:
    handler = logging.FileHandler(batch_dir / BATCH_LOG_FILENAME, encoding="utf-8")
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return handler


def temp_output_path(batch_dir: Path, prefix: str, date_str: str, output_index: int) -> Path:
    return batch_dir / f"{prefix}_{date_str}_temp_{output_index}.mp4"


def delete_temp_videos(batch_dir: Path, prefix: str) -> None:
    """Remove unfinished outputs of this batch; files outside `batch_dir` are left alone."""
    for temp_file in batch_dir.glob(f"{prefix}_*_temp_*.mp4"):
        temp_file.unlink(missing_ok=True)


def run_compose_batch(
    toolchain: Toolchain,
    settings: ComposeSettings,
    state: BatchState,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> BatchReport:
    """Produce up to `num_videos` assemblies, one at a time.

    `state` carries the audio rotation and output counters in and out; the
    caller persists it. The loop gives up early once skips plus failures reach
    twice the requested output count.
    """
    rng = rng or random.Random()
    now = now or datetime.now()
    settings.bounds.validate()

    batch_dir = settings.output_dir / now.strftime("%Y%m%d_%H%M")
    batch_dir.mkdir(parents=True, exist_ok=True)
    work_dir = batch_dir / TEMP_CLIPS_DIRNAME
    work_dir.mkdir(parents=True, exist_ok=True)
    handler = attach_batch_log(batch_dir)
    report = BatchReport(batch_dir=batch_dir)

    try:
        music_files = list_audio_files(settings.music_dir)
        if not music_files:
            raise FileNotFoundError(
                f"No audio files found in {settings.music_dir}. "
                "Run filter-audio first or disable the audio filter."
            )
        pool = load_clip_pool(toolchain.ffprobe, settings.clips_dir)
        if not pool:
            raise FileNotFoundError(f"No clips found in {settings.clips_dir}. Run split first.")
        open_files = list_clip_files(settings.open_dir)

        synthesis_log = SynthesisLog(batch_dir)
        guard = ResolutionGuard(
            toolchain,
            settings.clips_dir / RESIZED_CLIPS_DIRNAME,
            min_width=settings.resize_min_width,
            min_height=settings.resize_min_height,
            video_codec_args=settings.video_codec_args,
            oplog=oplog,
        )
        intro_durations: dict[Path, float] = {}
        used_selections: set[tuple[str, ...]] = set()
        start_index = state.audio_start_index(len(music_files))
        date_str = now.strftime("%Y%m%d")
        abort_limit = settings.num_videos * 2
        slot = 0

        _emit(f"Composing {settings.num_videos} video(s) from {len(pool)} clip(s) "
              f"and {len(music_files)} audio track(s) into {batch_dir}")
        bar = tqdm(total=settings.num_videos, desc="Composing", unit="video")
        try:
            while len(report.successes) < settings.num_videos:
                if report.skipped + report.failures >= abort_limit:
                    _emit("Too many skipped or failed videos, stopping batch.", logging.ERROR)
                    report.aborted = True
                    break
                if stop is not None and stop.stopped:
                    report.aborted = True
                    break

                started = time.time()
                audio_index = (start_index + slot) % len(music_files)
                slot += 1
                state.last_audio_index = audio_index
                ordinal = len(report.successes) + 1

                try:
                    audio = load_audio_track(toolchain.ffprobe, music_files[audio_index])
                except ProbeFailure as exc:
                    _emit(f"Video {ordinal}: unreadable audio {music_files[audio_index].name}: {exc}",
                          logging.WARNING)
                    report.skipped += 1
                    continue
                _emit(f"Video {ordinal}: audio {audio.name} ({audio.duration:.2f}s)")

                try:
                    plan = reconcile(pool, audio.duration, settings.bounds,
                                     used_selections=used_selections, rng=rng)
                except ReconciliationExhausted as exc:
                    report.retries += exc.attempts
                    report.skipped += 1
                    _emit(f"Video {ordinal}: {exc} Skipped.", logging.WARNING)
                    continue
                report.retries += plan.attempts - 1
                used_selections.add(plan.selection_key)
                _emit(
                    f"Video {ordinal}: {len(plan.clips)} clip(s), total {plan.total_duration:.2f}s, "
                    f"{plan.decision.adjustment.value} rate={plan.rate:.4f}"
                    + (f" trim_last_to={plan.trim_last_to:.2f}s" if plan.trim_last_to is not None else "")
                    + f" after {plan.attempts} attempt(s)"
                )

                intros: list[Path] = []
                if open_files and settings.open_clips_count > 0:
                    intros = [rng.choice(open_files) for _ in range(settings.open_clips_count)]

                try:
                    for intro in intros:
                        if intro not in intro_durations:
                            intro_durations[intro] = get_media_duration(toolchain.ffprobe, intro)
                except ProbeFailure as exc:
                    _emit(f"Video {ordinal}: unreadable intro clip: {exc}", logging.WARNING)
                    report.failures += 1
                    continue

                source_paths = intros + [clip.path for clip in plan.clips]
                clip_paths = [guard.ensure(path) for path in source_paths]

                output_index = next_output_index(settings.output_dir, state, settings.video_name_prefix, date_str)
                out_name = f"{settings.video_name_prefix}_{date_str}_{output_index}.mp4"
                out_path = batch_dir / out_name
                temp_out = temp_output_path(batch_dir, settings.video_name_prefix, date_str, output_index)

                try:
                    assemble_plan(
                        toolchain,
                        plan,
                        clip_paths,
                        audio,
                        temp_out,
                        work_dir=work_dir,
                        settings=settings,
                        oplog=oplog,
                        intro_durations=[intro_durations[intro] for intro in intros],
                        stop=stop,
                    )
                except EncodeStageFailure as exc:
                    report.failures += 1
                    _emit(f"Video {ordinal}: assembly failed at {exc.stage}: {exc.cause}", logging.ERROR)
                    continue

                temp_out.replace(out_path)
                state.record_output_index(settings.video_name_prefix, date_str, output_index)
                synthesis_log.record(
                    out_name,
                    clips=[path.stem for path in source_paths],
                    audio=audio.name,
                    open_dir=settings.open_dir,
                    clips_dir=settings.clips_dir,
                    music_dir=settings.music_dir_root or settings.music_dir,
                    timestamp=datetime.now(),
                    audio_path=audio.path,
                    intro_count=len(intros),
                    adjustment=plan.decision.adjustment.value,
                    rate=plan.rate,
                    trim_last_to=plan.trim_last_to,
                )
                elapsed = time.time() - started
                report.successes.append((out_name, elapsed))
                bar.update(1)
                _emit(f"Video {ordinal} done: {out_name} ({elapsed:.2f}s)")
        finally:
            bar.close()

        summarize_batch(report)
        return report
    finally:
        delete_temp_videos(batch_dir, settings.video_name_prefix)
        shutil.rmtree(work_dir, ignore_errors=True)
        logger.removeHandler(handler)
        handler.close()


def summarize_batch(report: BatchReport) -> None:
    if report.retries:
        _emit(f"Selection retries this batch: {report.retries}")
    else:
        _emit("No selection retries this batch.")
    _emit(f"Skipped: {report.skipped}, failed: {report.failures}")
    if not report.successes:
        _emit("No videos were produced.")
        return
    _emit("Per-video time:")
    for index, (name, elapsed) in enumerate(report.successes, start=1):
        _emit(f"  {index}: {name} {elapsed:.2f}s")


# ── Recreate ──────────────────────────────────────────────────────────────────

RECREATED_PREFIX = "recreated_"
REQUIRED_ENTRY_KEYS = ("clips", "audio", "openDir", "clipsDir", "musicDir")


@dataclass(frozen=True)
class RecordedAssembly:
    """One synthesis-log entry resolved back to files on disk."""

    video_name: str
    manifest_path: Path
    clips_dir: Path
    intro_paths: tuple[Path, ...]
    clip_paths: tuple[Path, ...]
    audio_path: Path
    decision: Optional[Decision]

    @property
    def output_path(self) -> Path:
        return self.manifest_path.parent / f"{RECREATED_PREFIX}{self.video_name}"


def find_synthesis_logs(output_dir: Path, video_name: str) -> list[Path]:
    """Synthesis logs under `output_dir` that list `video_name`, newest first."""
    matches = [
        manifest
        for manifest in output_dir.rglob(SYNTHESIS_LOG_FILENAME)
        if video_name in SynthesisLog(manifest.parent).read()
    ]
    return sorted(matches, key=lambda manifest: manifest.stat().st_mtime, reverse=True)


def _recorded_decision(entry: dict) -> Optional[Decision]:
    if "adjustment" not in entry:
        return None
    trim_last_to = entry.get("trimLastTo")
    return Decision(
        Adjustment(entry["adjustment"]),
        rate=float(entry.get("rate", 1.0)),
        trim_last_to=float(trim_last_to) if trim_last_to is not None else None,
    )


def _recorded_dir(recorded: str, fallback: Optional[Path]) -> Path:
    """The folder named in the log, or `fallback` once that folder has moved away."""
    path = Path(recorded)
    if not path.is_dir() and fallback is not None:
        return fallback
    return path


def _recorded_audio_path(entry: dict, music_dir: Path) -> Path:
    candidates = []
    if entry.get("audioPath"):
        candidates.append(Path(entry["audioPath"]))
    candidates.append(music_dir / entry["audio"])
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    # The track may sit in a duration-filtered subfolder of the recorded music root.
    for candidate in sorted(music_dir.rglob(entry["audio"])):
        if candidate.is_file():
            return candidate
    raise FileNotFoundError(f"Audio file {entry['audio']} not found under {music_dir}.")


def load_recorded_assembly(
    manifest_path: Path,
    video_name: str,
    *,
    settings: Optional[ComposeSettings] = None,
) -> RecordedAssembly:
    entry = SynthesisLog(manifest_path.parent).read().get(video_name)
    if not isinstance(entry, dict):
        raise KeyError(f"{manifest_path} has no entry for {video_name}.")
    missing = [key for key in REQUIRED_ENTRY_KEYS if not entry.get(key)]
    if missing:
        raise ValueError(f"{manifest_path}: entry for {video_name} lacks {', '.join(missing)}.")

    open_dir = _recorded_dir(entry["openDir"], settings.open_dir if settings else None)
    clips_dir = _recorded_dir(entry["clipsDir"], settings.clips_dir if settings else None)
    music_dir = _recorded_dir(entry["musicDir"], settings.music_dir if settings else None)
    names = list(entry["clips"])
    if "introCount" in entry:
        intro_count = int(entry["introCount"])
    else:
        # Older entries do not say how many intros lead the list.
        intro_count = 0
        while intro_count < len(names) and not (clips_dir / f"{names[intro_count]}.mp4").is_file():
            intro_count += 1
    intro_paths = tuple(open_dir / f"{name}.mp4" for name in names[:intro_count])
    clip_paths = tuple(clips_dir / f"{name}.mp4" for name in names[intro_count:])
    for path in intro_paths + clip_paths:
        if not path.is_file():
            raise FileNotFoundError(f"Clip file {path} no longer exists.")
    if not clip_paths:
        raise ValueError(f"{manifest_path}: entry for {video_name} lists no pool clips.")

    return RecordedAssembly(
        video_name=video_name,
        manifest_path=manifest_path,
        clips_dir=clips_dir,
        intro_paths=intro_paths,
        clip_paths=clip_paths,
        audio_path=_recorded_audio_path(entry, music_dir),
        decision=_recorded_decision(entry),
    )


def recreate_video(
    toolchain: Toolchain,
    video_name: str,
    settings: ComposeSettings,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
) -> Path:
    """Rebuild a previously composed video from its synthesis log entry.

    The newest synthesis log under `settings.output_dir` that lists the video
    wins. The result is written next to it as ``recreated_<name>``. Entries
    written before the decision was recorded are re-classified with
    `settings.bounds`.
    """
    manifests = find_synthesis_logs(settings.output_dir, video_name)
    if not manifests:
        raise FileNotFoundError(f"No synthesis log under {settings.output_dir} lists {video_name}.")
    recorded = load_recorded_assembly(manifests[0], video_name, settings=settings)
    progress_write(f"Recreating {video_name} from {recorded.manifest_path}")

    audio = load_audio_track(toolchain.ffprobe, recorded.audio_path)
    intro_durations = [get_media_duration(toolchain.ffprobe, path) for path in recorded.intro_paths]
    clips = tuple(
        ClipCandidate(name=path.stem, path=path, duration=get_media_duration(toolchain.ffprobe, path))
        for path in recorded.clip_paths
    )
    decision = recorded.decision
    if decision is None:
        decision = classify_total(
            sum(clip.duration for clip in clips), audio.duration, clips[-1].duration, settings.bounds
        )
        if decision is None:
            raise ReconciliationExhausted(
                f"Recorded clips of {video_name} no longer fit {audio.name}.", attempts=1
            )
    plan = ReconcilePlan(clips=clips, target_duration=audio.duration, decision=decision, attempts=1)

    guard = ResolutionGuard(
        toolchain,
        recorded.clips_dir / RESIZED_CLIPS_DIRNAME,
        min_width=settings.resize_min_width,
        min_height=settings.resize_min_height,
        video_codec_args=settings.video_codec_args,
        oplog=oplog,
    )
    source_paths = list(recorded.intro_paths) + list(recorded.clip_paths)
    clip_paths = [guard.ensure(path) for path in source_paths]

    work_dir = recorded.manifest_path.parent / f"{TEMP_CLIPS_DIRNAME}_recreate"
    try:
        assemble_plan(
            toolchain,
            plan,
            clip_paths,
            audio,
            recorded.output_path,
            work_dir=work_dir,
            settings=settings,
            oplog=oplog,
            intro_durations=intro_durations,
            stop=stop,
        )
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)
    progress_write(f"Recreated video written to {recorded.output_path}")
    return recorded.output_path
