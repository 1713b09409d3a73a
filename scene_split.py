"""Scene segmentation: detect cuts in raw footage and split it into clip files.

Each source moves through an explicit state machine

    pending -> in_progress [-> repairing] -> done | detection_failed | split_failed

and leaves the pending folder only once it reaches a terminal state. Repair
(remux, then minimal re-encode) is attempted by the executor after every
command variant has failed; a source that still fails is parked in a bucket
folder and never retried automatically.
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from tqdm import tqdm

from alias_map import PENDING_DIRNAME, invert_alias_map, list_video_files, update_alias_map
from errors import DetectionFailure, OperationFailure, ProbeFailure, SplitFailure
from executor import CachedRepairer, OperationLog, StopToken, run_logged, run_variants
from media_probe import get_frame_times, get_media_duration, get_video_fps
from toolchain import Toolchain, progress_write

PROCESSED_DIRNAME = "processed"
DETECTION_FAILED_DIRNAME = "detection_failed"
SPLIT_FAILED_DIRNAME = "split_failed"
STAGING_DIRNAME = ".staging"
ALIAS_MAP_FILENAME = "alias_map.json"

MIN_SEGMENT_SECONDS = 0.05
TO_END_MARGIN_SECONDS = 0.02

PTS_TIME_PATTERN = re.compile(r"pts_time:\s*([0-9.]+)")


class SourceState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REPAIRING = "repairing"
    DONE = "done"
    DETECTION_FAILED = "detection_failed"
    SPLIT_FAILED = "split_failed"


TERMINAL_STATES = (SourceState.DONE, SourceState.DETECTION_FAILED, SourceState.SPLIT_FAILED)


@dataclass(frozen=True)
class Segment:
    alias: str
    ordinal: int
    path: Path
    duration: float

    @property
    def name(self) -> str:
        return f"{self.alias}_{self.ordinal}"


@dataclass
class SourceVideo:
    path: Path
    alias: str
    state: SourceState = SourceState.PENDING
    boundaries: tuple[float, ...] = ()
    segments: list[Segment] = field(default_factory=list)
    failure: Optional[str] = None


@dataclass(frozen=True)
class SplitSettings:
    scene_threshold: float = 0.4
    minus_frames: int = 2
    fast_split_copy: bool = False
    fast_seek_first: bool = False
    frame_accurate: bool = False
    detect_timeout: float = 600.0
    split_timeout: float = 600.0
    reencode_timeout: float = 600.0


@dataclass(frozen=True)
class InputLayout:
    input_dir: Path
    clips_dir: Path

    @property
    def pending_dir(self) -> Path:
        return self.input_dir / PENDING_DIRNAME

    @property
    def processed_dir(self) -> Path:
        return self.input_dir / PROCESSED_DIRNAME

    @property
    def detection_failed_dir(self) -> Path:
        return self.input_dir / DETECTION_FAILED_DIRNAME

    @property
    def split_failed_dir(self) -> Path:
        return self.input_dir / SPLIT_FAILED_DIRNAME

    @property
    def alias_map_path(self) -> Path:
        return self.input_dir / ALIAS_MAP_FILENAME

    def ensure(self) -> None:
        for directory in (
            self.clips_dir,
            self.pending_dir,
            self.processed_dir,
            self.detection_failed_dir,
            self.split_failed_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def destination_for(self, state: SourceState) -> Path:
        if state not in TERMINAL_STATES:
            raise ValueError(f"Source in state {state.value} cannot leave the pending folder.")
        return {
            SourceState.DONE: self.processed_dir,
            SourceState.DETECTION_FAILED: self.detection_failed_dir,
            SourceState.SPLIT_FAILED: self.split_failed_dir,
        }[state]


@dataclass
class SplitReport:
    processed: list[str] = field(default_factory=list)
    skipped_existing: list[str] = field(default_factory=list)
    no_cuts: list[str] = field(default_factory=list)
    detection_failed: list[str] = field(default_factory=list)
    split_failed: list[str] = field(default_factory=list)
    segment_count: int = 0


# ── Detection ─────────────────────────────────────────────────────────────────


def parse_scene_timestamps(stderr: str) -> list[float]:
    """Extract cut timestamps from ffmpeg showinfo output, always starting at 0."""
    times: list[float] = []
    for line in (stderr or "").splitlines():
        if "pts_time:" not in line:
            continue
        match = PTS_TIME_PATTERN.search(line)
        if not match:
            continue
        try:
            times.append(float(match.group(1)))
        except ValueError:
            continue

    times.sort()
    if not times or times[0] != 0:
        times.insert(0, 0.0)
    return times


def build_detect_command(ffmpeg_bin: str, input_video: Path, scene_threshold: float) -> list[str]:
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel",
        "info",
        "-nostdin",
        "-i",
        str(input_video),
        "-filter_complex",
        f"select='gt(scene,{scene_threshold})',showinfo",
        "-vsync",
        "vfr",
        "-f",
        "null",
        "-",
    ]


def detect_scene_boundaries(
    ffmpeg_bin: str,
    input_video: Path,
    *,
    scene_threshold: float,
    oplog: OperationLog,
    repair: Optional[Callable[[Path], Path]] = None,
    stop: Optional[StopToken] = None,
    timeout: float = 600.0,
) -> list[float]:
    """Run ffmpeg scene-change detection; one retry against a repaired input."""
    try:
        outcome = run_variants(
            lambda source: [build_detect_command(ffmpeg_bin, source, scene_threshold)],
            input_video,
            f"scene_detect_{input_video.stem}",
            oplog=oplog,
            timeout=timeout,
            repair=repair,
            stop=stop,
        )
    except (OperationFailure, ProbeFailure) as exc:
        raise DetectionFailure(f"Scene detection failed for {input_video.name}: {exc}") from exc
    return parse_scene_timestamps(outcome.result.stderr or "")


# ── Splitting ─────────────────────────────────────────────────────────────────


def segment_spans(
    boundaries: list[float],
    framerate: float,
    minus_frames: int,
) -> list[tuple[float, float]]:
    """(start, duration) per adjacent boundary pair, shaving `minus_frames` off the tail."""
    frame_duration = 1.0 / framerate if framerate > 0 else 0.0
    spans: list[tuple[float, float]] = []
    for start, end in zip(boundaries, boundaries[1:]):
        duration = end - start - frame_duration * minus_frames
        if duration <= 0:
            duration = MIN_SEGMENT_SECONDS
        spans.append((start, duration))
    return spans


def frame_index_at(frame_times: list[float], seconds: float) -> int:
    """Index of the first frame shown at or after `seconds`; len(frame_times) past the end."""
    for index, frame_time in enumerate(frame_times):
        if frame_time >= seconds:
            return index
    return len(frame_times)


def frame_ranges(boundaries: list[float], frame_times: list[float]) -> list[tuple[int, int]]:
    """[start, end) frame indexes per adjacent boundary pair, never empty."""
    ranges: list[tuple[int, int]] = []
    for start, end in zip(boundaries, boundaries[1:]):
        start_frame = frame_index_at(frame_times, start)
        end_frame = max(frame_index_at(frame_times, end), start_frame + 1)
        ranges.append((start_frame, end_frame))
    return ranges


def build_frame_select_command(
    ffmpeg_bin: str,
    input_video: Path,
    output_path: Path,
    *,
    start_frame: int,
    end_frame: int,
) -> list[str]:
    """Decode every frame and keep [start_frame, end_frame) exactly, timestamps rebuilt."""
    return [
        ffmpeg_bin,
        "-hide_banner", "-loglevel", "error", "-nostdin",
        "-fflags", "+genpts",
        "-i", str(input_video),
        "-vf", f"select='between(n\\,{start_frame}\\,{end_frame - 1})',setpts=N/FRAME_RATE/TB",
    ] + _encode_tail(output_path)


def _encode_tail(output_path: Path) -> list[str]:
    return [
        "-an",
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-pix_fmt", "yuv420p",
        "-movflags", "+faststart",
        "-y", str(output_path),
    ]


def build_split_variants(
    ffmpeg_bin: str,
    input_video: Path,
    output_path: Path,
    *,
    start: float,
    duration: float,
    fast_split_copy: bool = False,
    fast_seek_first: bool = False,
    include_end_time_variant: bool = True,
) -> list[list[str]]:
    """Ordered cut commands for one segment, fastest / most tolerant first."""
    head = [ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-nostdin"]
    start_arg = f"{start:.6f}"
    duration_arg = f"{duration:.6f}"

    copy_fast = head + [
        "-ss", start_arg,
        "-i", str(input_video),
        "-t", duration_arg,
        "-an",
        "-c:v", "copy",
        "-movflags", "+faststart",
        "-y", str(output_path),
    ]
    output_seek = head + [
        "-fflags", "+genpts",
        "-avoid_negative_ts", "make_zero",
        "-i", str(input_video),
        "-ss", start_arg,
        "-t", duration_arg,
    ] + _encode_tail(output_path)
    input_seek = head + [
        "-fflags", "+genpts",
        "-ss", start_arg,
        "-i", str(input_video),
        "-t", duration_arg,
    ] + _encode_tail(output_path)
    end = max(0.0, start + duration - TO_END_MARGIN_SECONDS)
    end_time = head + [
        "-fflags", "+genpts",
        "-i", str(input_video),
        "-ss", start_arg,
        "-to", f"{end:.3f}",
    ] + _encode_tail(output_path)

    variants: list[list[str]] = []
    if fast_split_copy:
        variants.append(copy_fast)
    if fast_seek_first:
        variants.extend([input_seek, output_seek])
    else:
        variants.extend([output_seek, input_seek])
    if include_end_time_variant:
        variants.append(end_time)
    return variants


def split_segment(
    ffmpeg_bin: str,
    input_video: Path,
    output_path: Path,
    *,
    start: float,
    duration: float,
    settings: SplitSettings,
    oplog: OperationLog,
    log_base: str,
    repair: Optional[Callable[[Path], Path]] = None,
    stop: Optional[StopToken] = None,
    frames: Optional[tuple[int, int]] = None,
) -> None:
    """Cut one segment; raises SplitFailure once every variant and the repair failed.

    With `frames`, a frame-select cut of exactly that range is tried before the
    time-based variants.
    """

    def variants_for(source: Path) -> list[list[str]]:
        variants: list[list[str]] = []
        if frames is not None:
            variants.append(
                build_frame_select_command(
                    ffmpeg_bin,
                    source,
                    output_path,
                    start_frame=frames[0],
                    end_frame=frames[1],
                )
            )
        # The end-time variant is only worth trying on the untouched source.
        return variants + build_split_variants(
            ffmpeg_bin,
            source,
            output_path,
            start=start,
            duration=duration,
            fast_split_copy=settings.fast_split_copy,
            fast_seek_first=settings.fast_seek_first,
            include_end_time_variant=source == input_video,
        )

    try:
        run_variants(
            variants_for,
            input_video,
            log_base,
            oplog=oplog,
            timeout=settings.split_timeout,
            output_path=output_path,
            repair=repair,
            stop=stop,
        )
    except (OperationFailure, ProbeFailure) as exc:
        oplog.append(
            f"{log_base}_fatal",
            f"SPLIT FAILED for {input_video.name} [{start}, {duration}] => {exc}",
        )
        raise SplitFailure(
            f"Could not cut {output_path.name} from {input_video.name}: {exc}"
        ) from exc


def reencode_segment(
    ffmpeg_bin: str,
    clip_path: Path,
    *,
    oplog: OperationLog,
    timeout: float = 600.0,
    stop: Optional[StopToken] = None,
) -> None:
    """Re-encode a freshly cut clip in place so every pool member concatenates cleanly."""
    temp_path = clip_path.with_name(clip_path.name + ".reencode.mp4")
    cmd = [
        ffmpeg_bin,
        "-hide_banner", "-loglevel", "error", "-nostdin",
        "-i", str(clip_path),
        "-c:v", "libx264",
        "-c:a", "aac",
        "-strict", "-2",
        "-y", str(temp_path),
    ]
    run_logged(
        cmd,
        f"reencode_{clip_path.stem}",
        oplog=oplog,
        timeout=timeout,
        output_path=temp_path,
        stop=stop,
    )
    temp_path.replace(clip_path)


def existing_segments(clips_dir: Path, alias: str) -> list[Path]:
    if not clips_dir.is_dir():
        return []
    return sorted(clips_dir.glob(f"{alias}_*.mp4"))


def staging_dir_for(clips_dir: Path, alias: str) -> Path:
    """Per-source scratch folder; segments only reach clips_dir once all are accepted."""
    return clips_dir / STAGING_DIRNAME / alias


def has_complete_split(clips_dir: Path, alias: str) -> bool:
    """Published segments with no staging folder left behind by an interrupted run."""
    if staging_dir_for(clips_dir, alias).exists():
        return False
    return bool(existing_segments(clips_dir, alias))


def discard_partial_split(clips_dir: Path, alias: str) -> None:
    """Remove an interrupted split's staged and published segments."""
    _discard(existing_segments(clips_dir, alias))
    shutil.rmtree(staging_dir_for(clips_dir, alias), ignore_errors=True)


def _discard(paths: list[Path]) -> None:
    for path in paths:
        path.unlink(missing_ok=True)


def _cut_segments(
    source: SourceVideo,
    toolchain: Toolchain,
    staging_dir: Path,
    settings: SplitSettings,
    *,
    oplog: OperationLog,
    repair: Callable[[Path], Path],
    stop: Optional[StopToken],
) -> list[Path]:
    boundaries = list(source.boundaries)
    framerate = get_video_fps(toolchain.ffprobe, source.path)
    spans = segment_spans(boundaries, framerate, settings.minus_frames)

    ranges: list[Optional[tuple[int, int]]] = [None] * len(spans)
    log_prefix = "split_alias"
    if settings.frame_accurate:
        try:
            frame_times = get_frame_times(toolchain.ffprobe, source.path)
        except ProbeFailure as exc:
            progress_write(f"Warning: frame timestamps unavailable for {source.path.name}, cutting by time: {exc}")
            frame_times = []
        if frame_times:
            ranges = list(frame_ranges(boundaries, frame_times))
            log_prefix = "split_frame"

    cut_paths: list[Path] = []
    with tqdm(total=len(spans), desc=f"Splitting {source.path.name}", unit="clip", leave=False) as bar:
        for ordinal, (start, duration) in enumerate(spans):
            output_path = staging_dir / f"{source.alias}_{ordinal}.mp4"
            split_segment(
                toolchain.ffmpeg,
                source.path,
                output_path,
                start=start,
                duration=duration,
                settings=settings,
                oplog=oplog,
                log_base=f"{log_prefix}_{source.path.stem}_{ordinal}",
                repair=repair,
                stop=stop,
                frames=ranges[ordinal],
            )
            cut_paths.append(output_path)
            bar.update(1)
    return cut_paths


def segment_source(
    source: SourceVideo,
    toolchain: Toolchain,
    clips_dir: Path,
    settings: SplitSettings,
    *,
    oplog: OperationLog,
    repairer: Optional[CachedRepairer] = None,
    stop: Optional[StopToken] = None,
) -> list[Segment]:
    """Drive one source to a terminal state and return its accepted segments.

    Segments are cut and re-encoded inside a staging folder and moved into
    `clips_dir` only after every one of them was accepted. Any exit before that,
    cancellation included, leaves no clip of this source in `clips_dir`.
    """
    if repairer is None:
        repairer = CachedRepairer(toolchain.ffmpeg, toolchain.ffprobe, oplog=oplog, stop=stop)

    def repair(path: Path) -> Path:
        source.state = SourceState.REPAIRING
        progress_write(f"Repairing {path.name} before retrying...")
        return repairer(path)

    source.state = SourceState.IN_PROGRESS
    try:
        boundaries = detect_scene_boundaries(
            toolchain.ffmpeg,
            source.path,
            scene_threshold=settings.scene_threshold,
            oplog=oplog,
            repair=repair,
            stop=stop,
            timeout=settings.detect_timeout,
        )
    except DetectionFailure as exc:
        source.state = SourceState.DETECTION_FAILED
        source.failure = str(exc)
        return []

    source.boundaries = tuple(boundaries)
    if len(boundaries) < 2:
        source.state = SourceState.DONE
        return []

    source.state = SourceState.IN_PROGRESS
    staging_dir = staging_dir_for(clips_dir, source.alias)
    shutil.rmtree(staging_dir, ignore_errors=True)
    staging_dir.mkdir(parents=True, exist_ok=True)

    published: list[Path] = []
    completed = False
    try:
        try:
            cut_paths = _cut_segments(
                source, toolchain, staging_dir, settings, oplog=oplog, repair=repair, stop=stop
            )
        except SplitFailure as exc:
            source.state = SourceState.SPLIT_FAILED
            source.failure = str(exc)
            return []

        staged: list[Segment] = []
        for ordinal, clip_path in enumerate(cut_paths):
            try:
                reencode_segment(
                    toolchain.ffmpeg,
                    clip_path,
                    oplog=oplog,
                    timeout=settings.reencode_timeout,
                    stop=stop,
                )
            except OperationFailure as exc:
                source.state = SourceState.SPLIT_FAILED
                source.failure = f"Re-encode of {clip_path.name} failed: {exc}"
                return []

            try:
                duration = get_media_duration(toolchain.ffprobe, clip_path)
            except ProbeFailure as exc:
                progress_write(f"Warning: dropping unreadable segment {clip_path.name}: {exc}")
                continue
            staged.append(Segment(alias=source.alias, ordinal=ordinal, path=clip_path, duration=duration))

        segments: list[Segment] = []
        for segment in staged:
            target = clips_dir / segment.path.name
            segment.path.replace(target)
            published.append(target)
            segments.append(Segment(segment.alias, segment.ordinal, target, segment.duration))
        completed = True
    finally:
        if not completed:
            _discard(published)
        shutil.rmtree(staging_dir, ignore_errors=True)

    source.segments = segments
    source.state = SourceState.DONE
    return segments


def collect_pending(layout: InputLayout) -> None:
    """Move loose videos from the input root into the pending folder."""
    for video in list_video_files(layout.input_dir):
        target = layout.pending_dir / video.name
        if not target.exists():
            shutil.move(str(video), str(target))


def archive_source(layout: InputLayout, source: SourceVideo) -> Path:
    destination_dir = layout.destination_for(source.state)
    destination = destination_dir / source.path.name
    shutil.move(str(source.path), str(destination))
    return destination


def run_split_batch(
    toolchain: Toolchain,
    layout: InputLayout,
    settings: SplitSettings,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
) -> SplitReport:
    """Segment every pending source, one at a time, in file-name order."""
    layout.ensure()
    collect_pending(layout)
    alias_map = update_alias_map(layout.pending_dir, layout.alias_map_path)
    name_to_alias = invert_alias_map(alias_map)

    report = SplitReport()
    videos = list_video_files(layout.pending_dir)
    if not videos:
        print("No pending videos found; nothing to split.")
        return report

    print(f"Pending videos: {len(videos)}")
    repairer = CachedRepairer(toolchain.ffmpeg, toolchain.ffprobe, oplog=oplog, stop=stop)
    for video in videos:
        alias = name_to_alias.get(video.stem)
        if alias is None:
            alias_map = update_alias_map(layout.pending_dir, layout.alias_map_path)
            name_to_alias = invert_alias_map(alias_map)
            alias = name_to_alias[video.stem]

        source = SourceVideo(path=video, alias=alias)
        if has_complete_split(layout.clips_dir, alias):
            progress_write(f"{video.name}: segments already present, skipping.")
            source.state = SourceState.DONE
            archive_source(layout, source)
            report.skipped_existing.append(video.name)
            continue
        if staging_dir_for(layout.clips_dir, alias).exists():
            progress_write(f"{video.name}: previous split was interrupted, starting over.")
            discard_partial_split(layout.clips_dir, alias)

        progress_write(f"Detecting scene cuts: {video.name}")
        try:
            segments = segment_source(
                source,
                toolchain,
                layout.clips_dir,
                settings,
                oplog=oplog,
                repairer=repairer,
                stop=stop,
            )
        finally:
            repairer.cleanup()

        archive_source(layout, source)
        if source.state == SourceState.DETECTION_FAILED:
            progress_write(f"Warning: {video.name} moved to {DETECTION_FAILED_DIRNAME}: {source.failure}")
            report.detection_failed.append(video.name)
        elif source.state == SourceState.SPLIT_FAILED:
            progress_write(f"Warning: {video.name} moved to {SPLIT_FAILED_DIRNAME}: {source.failure}")
            report.split_failed.append(video.name)
        elif not segments and len(source.boundaries) < 2:
            progress_write(f"{video.name}: no scene cuts detected, archived without splitting.")
            report.no_cuts.append(video.name)
        else:
            progress_write(f"{video.name}: {len(segments)} segment(s) added to {layout.clips_dir}.")
            report.processed.append(video.name)
            report.segment_count += len(segments)

    return report
