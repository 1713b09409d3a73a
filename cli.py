"""CLI: argument parsing, JSON config defaults, and runtime validation."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Optional, Sequence

from toolchain import SUPPORTED_ENCODERS

# ── Constants ──────────────────────────────────────────────────────────────────

SUBCOMMANDS = ("split", "compose", "recreate", "filter-audio", "enhance")
SUPPORTED_SCALES = (2, 3, 4)
SUPPORTED_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)


# ── Config file ────────────────────────────────────────────────────────────────


def _normalize_keys(values: dict) -> dict[str, object]:
    return {str(key).replace("-", "_"): value for key, value in values.items()}


def load_config_file(config_path: Path) -> dict[str, object]:
    """Read a JSON object of option defaults.

    Top-level keys apply to every subcommand that knows them; a key named after
    a subcommand may hold an object of keys for that subcommand only.
    """
    path = config_path.expanduser()
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Config file {path} must contain a JSON object.")
    return payload


def config_for_command(config: dict[str, object], command: str) -> dict[str, object]:
    shared = _normalize_keys({k: v for k, v in config.items() if k not in SUBCOMMANDS})
    section = config.get(command)
    if isinstance(section, dict):
        shared.update(_normalize_keys(section))
    return shared


def apply_config_defaults(
    subparsers: dict[str, argparse.ArgumentParser],
    config: dict[str, object],
) -> None:
    """Turn config values into parser defaults so explicit flags still win."""
    known_anywhere: set[str] = set()
    for command, subparser in subparsers.items():
        known = set(vars(subparser.parse_args([])))
        known_anywhere |= known
        values = config_for_command(config, command)
        section = config.get(command)
        if isinstance(section, dict):
            unknown = set(_normalize_keys(section)) - known
            if unknown:
                raise ValueError(f"Unknown config key(s) for {command}: {', '.join(sorted(unknown))}")
        subparser.set_defaults(**{key: value for key, value in values.items() if key in known})

    shared_unknown = {
        key
        for key in _normalize_keys({k: v for k, v in config.items() if k not in SUBCOMMANDS})
        if key not in known_anywhere
    }
    if shared_unknown:
        raise ValueError(f"Unknown config key(s): {', '.join(sorted(shared_unknown))}")


# ── Validation ─────────────────────────────────────────────────────────────────


def _require_positive(value: float, label: str) -> None:
    if value <= 0:
        raise ValueError(f"{label} must be > 0.")


def _require_non_negative(value: float, label: str) -> None:
    if value < 0:
        raise ValueError(f"{label} must be >= 0.")


def validate_split_args(args: argparse.Namespace) -> None:
    if not (0.0 < args.scene_threshold < 1.0):
        raise ValueError("Scene threshold must be between 0 and 1.")
    _require_non_negative(args.minus_frames, "Minus frames")
    _require_positive(args.split_timeout, "Split timeout")
    _require_positive(args.detect_timeout, "Detect timeout")


def validate_audio_range(args: argparse.Namespace) -> None:
    _require_non_negative(args.min_audio, "Minimum audio duration")
    if args.max_audio < args.min_audio:
        raise ValueError("Maximum audio duration must be >= minimum audio duration.")


def validate_assembly_args(args: argparse.Namespace) -> None:
    _require_positive(args.min_clip, "Minimum clip length")
    if args.max_clip < args.min_clip:
        raise ValueError("Maximum clip length must be >= minimum clip length.")
    _require_positive(args.min_rate, "Minimum rate")
    if args.max_rate < args.min_rate:
        raise ValueError("Maximum rate must be >= minimum rate.")
    _require_non_negative(args.max_av_diff, "Max A/V difference")
    _require_non_negative(args.shorter_max_diff, "Shorter max difference")
    _require_non_negative(args.longer_max_diff, "Longer max difference")
    _require_positive(args.max_attempts, "Max attempts")
    _require_positive(args.ffmpeg_timeout, "FFmpeg timeout")
    _require_non_negative(args.threads, "Threads")
    _require_non_negative(args.resize_min_width, "Minimum width")
    _require_non_negative(args.resize_min_height, "Minimum height")


def validate_compose_args(args: argparse.Namespace) -> None:
    _require_positive(args.num_videos, "Number of videos")
    validate_assembly_args(args)
    _require_non_negative(args.open_clips_count, "Intro clip count")
    if not args.video_name_prefix or "/" in args.video_name_prefix or "\\" in args.video_name_prefix:
        raise ValueError("Video name prefix must be a non-empty file name fragment.")
    validate_audio_range(args)


def validate_recreate_args(args: argparse.Namespace) -> None:
    if not args.video_name:
        raise ValueError("A video file name to recreate is required.")
    if Path(args.video_name).name != args.video_name:
        raise ValueError("Give the video file name only, without folders.")
    validate_assembly_args(args)


def validate_enhance_args(args: argparse.Namespace) -> None:
    if not args.input:
        raise ValueError("An input file or directory is required (--input or config 'input').")
    _require_positive(args.jobs, "Jobs")
    _require_positive(args.frame_timeout, "Frame timeout")
    if args.tile_size is not None:
        _require_non_negative(args.tile_size, "Tile size")
    if args.target_width is not None:
        _require_positive(args.target_width, "Target width")
    if args.target_height is not None:
        _require_positive(args.target_height, "Target height")


# ── Parser ─────────────────────────────────────────────────────────────────────


def _add_log_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Per-operation tool log directory (default: <output-dir>/ffmpeg_logs)",
    )


def _add_codec_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--video-codec",
        type=str,
        choices=SUPPORTED_ENCODERS,
        default="libx264",
        help="Preferred video encoder; falls back to what ffmpeg provides",
    )
    parser.add_argument(
        "--preset",
        type=str,
        choices=SUPPORTED_PRESETS,
        default="veryfast",
        help="x264 preset",
    )
    parser.add_argument("--threads", type=int, default=0, help="Encoder threads (0 = auto)")


def _add_audio_range(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--music-dir", type=str, default="music", help="Audio track folder")
    parser.add_argument("--min-audio", type=float, default=30.0, help="Minimum audio duration (s)")
    parser.add_argument("--max-audio", type=float, default=180.0, help="Maximum audio duration (s)")


def _add_assembly_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--min-rate", type=float, default=0.95, help="Lowest timestamp rate")
    parser.add_argument("--max-rate", type=float, default=1.05, help="Highest timestamp rate")
    parser.add_argument("--min-clip", type=float, default=1.5, help="Shortest usable segment (s)")
    parser.add_argument("--max-clip", type=float, default=30.0, help="Longest usable segment (s)")
    parser.add_argument("--max-av-diff", type=float, default=0.2,
                        help="Accepted video/audio length difference (s)")
    parser.add_argument("--shorter-max-diff", type=float, default=2.0,
                        help="Largest shortfall fixable by stretching (s)")
    parser.add_argument("--longer-max-diff", type=float, default=2.0,
                        help="Largest excess fixable by compressing or trimming (s)")
    parser.add_argument("--max-attempts", type=int, default=100, help="Selection attempts per video")
    parser.add_argument("--ffmpeg-timeout", type=float, default=120.0, help="Per-stage timeout (s)")
    _add_codec_options(parser)
    parser.add_argument("--copy-on-mux", action=argparse.BooleanOptionalAction, default=True,
                        help="Stream-copy video when muxing audio")
    parser.add_argument("--remux-copy", action=argparse.BooleanOptionalAction, default=True,
                        help="Stream-copy during the final trim and remux")
    parser.add_argument("--resize-min-width", type=int, default=0,
                        help="Upscale segments narrower than this (0 = off)")
    parser.add_argument("--resize-min-height", type=int, default=0,
                        help="Upscale segments shorter than this (0 = off)")


def build_parser() -> tuple[argparse.ArgumentParser, dict[str, argparse.ArgumentParser]]:
    parser = argparse.ArgumentParser(
        prog="scene-montage",
        description="Split footage at scene cuts, compose music-length montages, and enhance videos",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON file of option defaults; explicit flags override it",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True
    formatter = argparse.ArgumentDefaultsHelpFormatter

    split = commands.add_parser("split", help="Cut pending source videos at scene changes",
                                formatter_class=formatter)
    split.add_argument("--input-dir", type=str, default="input", help="Source video folder")
    split.add_argument("--clips-dir", type=str, default="clips", help="Segment pool folder")
    split.add_argument("--output-dir", type=str, default="output", help="Output folder (tool logs)")
    split.add_argument("--scene-threshold", type=float, default=0.4, help="Scene change threshold (0-1)")
    split.add_argument("--minus-frames", type=int, default=2,
                       help="Frames shaved off each segment tail")
    split.add_argument("--fast-split-copy", action=argparse.BooleanOptionalAction, default=False,
                       help="Try a stream-copy cut before re-encoding")
    split.add_argument("--fast-seek-first", action=argparse.BooleanOptionalAction, default=False,
                       help="Try input seeking before output seeking")
    split.add_argument("--frame-accurate", action=argparse.BooleanOptionalAction, default=False,
                       help="Cut exact frame ranges by frame index before trying time-based cuts")
    split.add_argument("--detect-timeout", type=float, default=600.0, help="Scene detection timeout (s)")
    split.add_argument("--split-timeout", type=float, default=600.0, help="Per-segment cut timeout (s)")
    _add_log_dir(split)

    compose = commands.add_parser("compose", help="Assemble segments into videos matching audio tracks",
                                  formatter_class=formatter)
    compose.add_argument("--input-dir", type=str, default="input", help="Source video folder (state key)")
    compose.add_argument("--clips-dir", type=str, default="clips", help="Segment pool folder")
    compose.add_argument("--open-dir", type=str, default="open", help="Intro clip folder")
    compose.add_argument("--output-dir", type=str, default="output", help="Output folder")
    _add_audio_range(compose)
    compose.add_argument("--audio-filter", action=argparse.BooleanOptionalAction, default=True,
                         help="Read audio from the duration-filtered subfolder")
    compose.add_argument("--num-videos", type=int, default=3, help="Videos to produce")
    compose.add_argument("--open-clips-count", type=int, default=1, help="Intro clips per video")
    compose.add_argument("--video-name-prefix", type=str, default="myvideo", help="Output file prefix")
    _add_assembly_options(compose)
    compose.add_argument("--seed", type=int, default=None, help="Random seed for clip selection")
    _add_log_dir(compose)

    recreate = commands.add_parser("recreate", help="Rebuild a composed video from its synthesis log",
                                   formatter_class=formatter)
    recreate.add_argument("video_name", nargs="?", default=None,
                          help="Composed video file name, e.g. myvideo_20260102_1.mp4")
    recreate.add_argument("--output-dir", type=str, default="output",
                          help="Folder searched for synthesis logs")
    recreate.add_argument("--clips-dir", type=str, default="clips",
                          help="Segment folder used when the recorded one has moved")
    recreate.add_argument("--open-dir", type=str, default="open",
                          help="Intro clip folder used when the recorded one has moved")
    recreate.add_argument("--music-dir", type=str, default="music",
                          help="Audio folder used when the recorded one has moved")
    _add_assembly_options(recreate)
    _add_log_dir(recreate)

    filter_audio = commands.add_parser("filter-audio", help="Copy tracks within a duration range",
                                       formatter_class=formatter)
    _add_audio_range(filter_audio)

    enhance = commands.add_parser("enhance", help="Upscale videos with Real-ESRGAN",
                                  formatter_class=formatter)
    enhance.add_argument("-i", "--input", type=str, default=None, help="Input video file or folder")
    enhance.add_argument("-o", "--output", type=str, default="output/enhanced", help="Output folder")
    enhance.add_argument("-m", "--model", type=str, default="realesrgan-x4plus", help="Real-ESRGAN model")
    enhance.add_argument("-s", "--scale", type=int, default=4, choices=SUPPORTED_SCALES,
                         help="Upscaling factor")
    enhance.add_argument("-j", "--jobs", type=int, default=1, help="Concurrent frame workers")
    enhance.add_argument("--resume", action=argparse.BooleanOptionalAction, default=True,
                         help="Reuse extracted frames and checkpoint from an interrupted run")
    enhance.add_argument("--suffix", type=str, default="_enhanced", help="Output file name suffix")
    enhance.add_argument("--target-width", type=int, default=None, help="Post-scale width")
    enhance.add_argument("--target-height", type=int, default=None, help="Post-scale height")
    enhance.add_argument("--scale-flags", type=str, default="lanczos", help="Post-scale filter flags")
    enhance.add_argument("--realesrgan-path", type=str, default=None,
                         help="Custom path to realesrgan-ncnn-vulkan binary")
    enhance.add_argument("--model-path", type=str, default=None, help="Custom model directory path")
    enhance.add_argument("-g", "--gpu-id", type=str, default=None, help="GPU device ID")
    enhance.add_argument("-t", "--tile-size", type=int, default=None, help="Tile size (0 = auto)")
    enhance.add_argument("--frame-timeout", type=float, default=300.0, help="Per-frame upscale timeout (s)")
    _add_codec_options(enhance)
    _add_log_dir(enhance)

    subparsers = {
        "split": split,
        "compose": compose,
        "recreate": recreate,
        "filter-audio": filter_audio,
        "enhance": enhance,
    }
    return parser, subparsers


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", type=str, default=None)
    known, _ = pre_parser.parse_known_args(argv)

    parser, subparsers = build_parser()
    if known.config:
        apply_config_defaults(subparsers, load_config_file(Path(known.config)))
    return parser.parse_args(argv)
