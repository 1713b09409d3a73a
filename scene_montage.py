#!/usr/bin/env python3
"""
scene-montage: cut footage at scene changes, reassemble the segments into
videos that match music tracks, and enhance finished videos with Real-ESRGAN.
"""

from __future__ import annotations

import argparse
import random
import signal
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from alias_map import directory_key
from assemble import ComposeSettings, recreate_video, run_compose_batch
from audio_pool import filter_audio_by_duration, resolve_music_dir
from batch_state import load_batch_state, save_batch_state
from cli import (
    parse_args,
    validate_audio_range,
    validate_compose_args,
    validate_enhance_args,
    validate_recreate_args,
    validate_split_args,
)
from enhance_video import EnhanceSettings, run_enhance_batch
from executor import OperationLog, StopToken
from reconcile import ReconcileBounds
from scene_split import InputLayout, SplitSettings, run_split_batch
from toolchain import build_video_codec_args, detect_video_encoder, resolve_toolchain
from tracing import init_tracing, shutdown_tracing, traced

DEFAULT_LOG_DIRNAME = "ffmpeg_logs"


def format_time(seconds: float) -> str:
    """Format seconds into a human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours = minutes // 60
    minutes = minutes % 60
    return f"{hours}h {minutes}m {secs}s"


def operation_log_for(args: argparse.Namespace, output_dir: Path) -> OperationLog:
    if args.log_dir:
        return OperationLog(Path(args.log_dir).expanduser())
    return OperationLog(output_dir / DEFAULT_LOG_DIRNAME)


def build_reconcile_bounds(args: argparse.Namespace) -> ReconcileBounds:
    return ReconcileBounds(
        min_clip=args.min_clip,
        max_clip=args.max_clip,
        min_rate=args.min_rate,
        max_rate=args.max_rate,
        max_av_diff=args.max_av_diff,
        shorter_max_diff=args.shorter_max_diff,
        longer_max_diff=args.longer_max_diff,
        max_attempts=args.max_attempts,
    )


def resolve_codec_args(ffmpeg_bin: str, args: argparse.Namespace) -> tuple[str, ...]:
    encoder = detect_video_encoder(ffmpeg_bin, args.video_codec)
    if encoder != args.video_codec:
        print(f"Encoder {args.video_codec} unavailable, using {encoder}.")
    return tuple(build_video_codec_args(encoder, preset=args.preset, threads=args.threads))


@traced
def run_split(args: argparse.Namespace, stop: StopToken) -> int:
    validate_split_args(args)
    toolchain = resolve_toolchain()
    layout = InputLayout(
        input_dir=Path(args.input_dir).expanduser(),
        clips_dir=Path(args.clips_dir).expanduser(),
    )
    settings = SplitSettings(
        scene_threshold=args.scene_threshold,
        minus_frames=args.minus_frames,
        fast_split_copy=args.fast_split_copy,
        fast_seek_first=args.fast_seek_first,
        frame_accurate=args.frame_accurate,
        detect_timeout=args.detect_timeout,
        split_timeout=args.split_timeout,
    )
    oplog = operation_log_for(args, Path(args.output_dir).expanduser())

    started = time.time()
    report = run_split_batch(toolchain, layout, settings, oplog=oplog, stop=stop)
    print("=" * 60)
    print(f"Split complete in {format_time(time.time() - started)}")
    print(f"Processed: {len(report.processed)} ({report.segment_count} segment(s))")
    print(f"Already split: {len(report.skipped_existing)}")
    print(f"No scene cuts: {len(report.no_cuts)}")
    print(f"Detection failed: {len(report.detection_failed)}")
    print(f"Split failed: {len(report.split_failed)}")
    print(f"Tool logs: {oplog.root}")
    print("=" * 60)
    return 0


@traced
def run_compose(args: argparse.Namespace, stop: StopToken) -> int:
    validate_compose_args(args)
    toolchain = resolve_toolchain()
    music_root = Path(args.music_dir).expanduser()
    music_dir = resolve_music_dir(
        music_root,
        enable_filter=args.audio_filter,
        min_duration=args.min_audio,
        max_duration=args.max_audio,
    )
    output_dir = Path(args.output_dir).expanduser()
    settings = ComposeSettings(
        clips_dir=Path(args.clips_dir).expanduser(),
        open_dir=Path(args.open_dir).expanduser(),
        music_dir=music_dir,
        music_dir_root=music_root,
        output_dir=output_dir,
        num_videos=args.num_videos,
        open_clips_count=args.open_clips_count,
        video_name_prefix=args.video_name_prefix,
        bounds=build_reconcile_bounds(args),
        stage_timeout=args.ffmpeg_timeout,
        video_codec_args=resolve_codec_args(toolchain.ffmpeg, args),
        copy_on_mux=args.copy_on_mux,
        remux_copy=args.remux_copy,
        resize_min_width=args.resize_min_width,
        resize_min_height=args.resize_min_height,
    )
    oplog = operation_log_for(args, output_dir)
    state = load_batch_state(
        output_dir,
        input_dir_key=directory_key(Path(args.input_dir).expanduser()),
        music_dir_key=str(music_dir),
    )

    started = time.time()
    try:
        report = run_compose_batch(
            toolchain,
            settings,
            state,
            oplog=oplog,
            stop=stop,
            rng=random.Random(args.seed),
        )
    finally:
        save_batch_state(output_dir, state)

    print("=" * 60)
    print(f"Compose complete in {format_time(time.time() - started)}")
    print(f"Produced: {len(report.successes)} of {settings.num_videos}")
    print(f"Batch folder: {report.batch_dir}")
    print("=" * 60)
    if report.aborted or not report.successes:
        return 1
    return 0


@traced
def run_recreate(args: argparse.Namespace, stop: StopToken) -> int:
    validate_recreate_args(args)
    toolchain = resolve_toolchain()
    output_dir = Path(args.output_dir).expanduser()
    settings = ComposeSettings(
        clips_dir=Path(args.clips_dir).expanduser(),
        open_dir=Path(args.open_dir).expanduser(),
        music_dir=Path(args.music_dir).expanduser(),
        output_dir=output_dir,
        bounds=build_reconcile_bounds(args),
        stage_timeout=args.ffmpeg_timeout,
        video_codec_args=resolve_codec_args(toolchain.ffmpeg, args),
        copy_on_mux=args.copy_on_mux,
        remux_copy=args.remux_copy,
        resize_min_width=args.resize_min_width,
        resize_min_height=args.resize_min_height,
    )
    oplog = operation_log_for(args, output_dir)

    started = time.time()
    output_path = recreate_video(toolchain, args.video_name, settings, oplog=oplog, stop=stop)
    print(f"Recreated {args.video_name} as {output_path} in {format_time(time.time() - started)}")
    return 0


@traced
def run_filter_audio(args: argparse.Namespace, stop: StopToken) -> int:
    validate_audio_range(args)
    toolchain = resolve_toolchain()
    result = filter_audio_by_duration(
        toolchain.ffprobe,
        Path(args.music_dir).expanduser(),
        min_duration=args.min_audio,
        max_duration=args.max_audio,
    )
    print(f"Kept {len(result.accepted)} track(s) in {result.target_dir}")
    print(f"Out of range: {len(result.rejected)}, unreadable: {len(result.unreadable)}")
    return 0


@traced
def run_enhance(args: argparse.Namespace, stop: StopToken) -> int:
    validate_enhance_args(args)
    toolchain = resolve_toolchain(
        need_realesrgan=True,
        realesrgan_path=args.realesrgan_path,
        model_path=args.model_path,
    )
    output_dir = Path(args.output).expanduser()
    settings = EnhanceSettings(
        model=args.model,
        scale=args.scale,
        jobs=args.jobs,
        resume=args.resume,
        suffix=args.suffix,
        target_width=args.target_width,
        target_height=args.target_height,
        scale_flags=args.scale_flags,
        gpu_id=args.gpu_id,
        tile_size=args.tile_size,
        frame_timeout=args.frame_timeout,
        video_codec_args=resolve_codec_args(toolchain.ffmpeg, args),
    )
    oplog = operation_log_for(args, output_dir)

    started = time.time()
    report = run_enhance_batch(
        toolchain,
        Path(args.input).expanduser(),
        output_dir,
        settings,
        oplog=oplog,
        stop=stop,
    )
    print(f"Total time: {format_time(time.time() - started)}")
    return 1 if report.failed else 0


COMMAND_HANDLERS = {
    "split": run_split,
    "compose": run_compose,
    "recreate": run_recreate,
    "filter-audio": run_filter_audio,
    "enhance": run_enhance,
}


def install_stop_handler(stop: StopToken) -> None:
    def handle_sigterm(signum, frame):
        print("Termination requested, stopping current tool...", file=sys.stderr)
        stop.request_stop()

    signal.signal(signal.SIGTERM, handle_sigterm)


def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    stop = StopToken()
    try:
        args = parse_args(raw_argv)
        install_stop_handler(stop)
        init_tracing()
        return COMMAND_HANDLERS[args.command](args, stop)
    except KeyboardInterrupt:
        stop.request_stop()
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    raise SystemExit(main())
