"""Resilient execution of external media operations.

Every ffmpeg / upscaler invocation goes through `run_logged`, which bounds the
call with a timeout, kills the process when it overruns, removes that
invocation's partial output and appends the full command, exit code, stderr and
stdout to a per-operation log file. `run_variants` layers the retry policy on
top: candidate command variants are tried in order, and when all of them fail
the input is repaired with `quick_fix_video` and the variant list is tried one
more time against the repaired file.
"""

from __future__ import annotations

import re
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

from errors import OperationCancelled, OperationFailure, OperationTimeout, ProbeFailure
from media_probe import probe_json

DEFAULT_TIMEOUT_SECONDS = 300.0
REMUX_TIMEOUT_SECONDS = 180.0
REENCODE_TIMEOUT_SECONDS = 600.0
QUICK_FIX_DIRNAME = "_fixed"

VariantBuilder = Callable[[Path], Sequence[Sequence[str]]]
Repairer = Callable[[Path], Path]

_log_lock = threading.Lock()


def sanitize_log_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_.-]", "_", name)


@dataclass(frozen=True)
class OperationLog:
    """Directory holding one append-only log file per logical operation."""

    root: Path

    def path_for(self, name: str) -> Path:
        return self.root / f"{sanitize_log_name(name)}.log"

    def append(self, name: str, content: str) -> Path:
        log_path = self.path_for(name)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with _log_lock, log_path.open("a", encoding="utf-8") as handle:
                handle.write(content if content.endswith("\n") else content + "\n")
        except OSError:
            # Best-effort: a broken log directory must not fail the operation.
            pass
        return log_path


class StopToken:
    """Cancellation handle: `request_stop` kills whichever tool is running."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stopped = False
        self._processes: set[subprocess.Popen] = set()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def attach(self, proc: subprocess.Popen) -> None:
        with self._lock:
            if self._stopped:
                proc.kill()
            self._processes.add(proc)

    def detach(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._processes.discard(proc)

    def request_stop(self) -> None:
        with self._lock:
            self._stopped = True
            running = list(self._processes)
        for proc in running:
            try:
                proc.kill()
            except OSError:
                pass


def _remove_partial(output_path: Optional[Path]) -> None:
    if output_path is not None:
        output_path.unlink(missing_ok=True)


def run_logged(
    cmd: Sequence[str],
    log_name: str,
    *,
    oplog: OperationLog,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    output_path: Optional[Path] = None,
    stop: Optional[StopToken] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess[str]:
    """Run one external command with a hard timeout and a persisted log.

    Raises OperationTimeout when the process is killed for overrunning,
    OperationFailure on a non-zero exit and OperationCancelled when `stop`
    fired. In all three cases `output_path` (if given) is deleted.
    """
    argv = [str(part) for part in cmd]
    if stop is not None and stop.stopped:
        raise OperationCancelled(f"{log_name}: stop requested")

    started = datetime.now().isoformat(timespec="seconds")
    oplog.append(log_name, f"==== {started} {Path(argv[0]).name} start ====\nARGS: {' '.join(argv)}")

    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=str(cwd) if cwd is not None else None,
        )
    except OSError as exc:
        log_path = oplog.append(log_name, f"PROCESS ERROR: {exc}")
        raise OperationFailure(
            f"{log_name}: could not start {argv[0]}: {exc}",
            log_path=log_path,
        ) from exc

    if stop is not None:
        stop.attach(proc)
    try:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
            _remove_partial(output_path)
            log_path = oplog.append(
                log_name,
                f"TIMEOUT after {timeout:g}s, killing process\nSTDERR:\n{stderr}\n",
            )
            raise OperationTimeout(
                f"{log_name}: timed out after {timeout:g}s. See log: {log_path}",
                returncode=proc.returncode,
                stderr=stderr or "",
                log_path=log_path,
            )
    finally:
        if stop is not None:
            stop.detach(proc)

    log_path = oplog.append(
        log_name,
        f"---- end (code={proc.returncode}) ----\nSTDERR:\n{stderr}\n\nSTDOUT:\n{stdout}\n",
    )
    if stop is not None and stop.stopped:
        _remove_partial(output_path)
        raise OperationCancelled(f"{log_name}: stop requested")
    if proc.returncode != 0:
        _remove_partial(output_path)
        raise OperationFailure(
            f"{log_name}: exit code {proc.returncode}. See log: {log_path}",
            returncode=proc.returncode,
            stderr=stderr or "",
            stdout=stdout or "",
            log_path=log_path,
        )
    return subprocess.CompletedProcess(argv, proc.returncode, stdout, stderr)


@dataclass(frozen=True)
class VariantOutcome:
    """Which attempt produced the output."""

    variant_index: int
    repaired: bool
    input_path: Path
    result: subprocess.CompletedProcess


def run_variants(
    build_variants: VariantBuilder,
    input_path: Path,
    log_base: str,
    *,
    oplog: OperationLog,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    output_path: Optional[Path] = None,
    repair: Optional[Repairer] = None,
    stop: Optional[StopToken] = None,
) -> VariantOutcome:
    """Try each command variant in order, then repair the input and try again.

    `build_variants(path)` returns the full commands for one logical operation
    reading from `path`. Attempts run strictly one after another since they
    share `output_path`. The last failure is re-raised once every variant has
    failed against both the original and the repaired input.
    """
    variants = build_variants(input_path)
    if not variants:
        raise OperationFailure(f"{log_base}: no command variants")

    last_error = OperationFailure(f"{log_base}: every variant failed")
    for index, cmd in enumerate(variants, start=1):
        try:
            result = run_logged(
                cmd,
                f"{log_base}_try{index}",
                oplog=oplog,
                timeout=timeout,
                output_path=output_path,
                stop=stop,
            )
            return VariantOutcome(
                variant_index=index, repaired=False, input_path=input_path, result=result
            )
        except OperationFailure as exc:
            last_error = exc

    if repair is None:
        raise last_error

    try:
        repaired_input = repair(input_path)
    except (OperationFailure, ProbeFailure) as exc:
        oplog.append(f"{log_base}_fatal", f"QUICK FIX FAILED for {input_path.name}: {exc}")
        raise last_error from exc

    for index, cmd in enumerate(build_variants(repaired_input), start=1):
        try:
            result = run_logged(
                cmd,
                f"{log_base}_fixed_try{index}",
                oplog=oplog,
                timeout=timeout,
                output_path=output_path,
                stop=stop,
            )
            return VariantOutcome(
                variant_index=index, repaired=True, input_path=repaired_input, result=result
            )
        except OperationFailure as exc:
            last_error = exc

    raise last_error


def quick_fix_video(
    ffmpeg_bin: str,
    ffprobe_bin: str,
    input_path: Path,
    *,
    oplog: OperationLog,
    stop: Optional[StopToken] = None,
) -> Path:
    """Repair a malformed source: stream-copy remux first, minimal re-encode second.

    Both outputs live under `<source dir>/_fixed/` and are only returned once
    ffprobe can read them back.
    """
    fixed_dir = input_path.parent / QUICK_FIX_DIRNAME
    fixed_dir.mkdir(parents=True, exist_ok=True)
    base = input_path.stem
    remux_path = fixed_dir / f"{base}_remux.mp4"
    reencode_path = fixed_dir / f"{base}_reenc.mp4"

    remux_cmd = [
        ffmpeg_bin,
        "-hide_banner", "-loglevel", "error", "-nostdin",
        "-fflags", "+genpts",
        "-i", str(input_path),
        "-map", "0:v:0",
        "-c", "copy",
        "-movflags", "+faststart",
        "-y", str(remux_path),
    ]
    try:
        run_logged(
            remux_cmd,
            f"fix_remux_{base}",
            oplog=oplog,
            timeout=REMUX_TIMEOUT_SECONDS,
            output_path=remux_path,
            stop=stop,
        )
        probe_json(ffprobe_bin, remux_path)
        return remux_path
    except (OperationFailure, ProbeFailure) as exc:
        oplog.append(f"fix_remux_{base}", f"remux rejected, falling back to re-encode: {exc}")

    reencode_cmd = [
        ffmpeg_bin,
        "-hide_banner", "-loglevel", "error", "-nostdin",
        "-fflags", "+genpts",
        "-i", str(input_path),
        "-map", "0:v:0",
        "-c:v", "libx264", "-preset", "ultrafast", "-pix_fmt", "yuv420p",
        "-an", "-movflags", "+faststart",
        "-y", str(reencode_path),
    ]
    run_logged(
        reencode_cmd,
        f"fix_reencode_{base}",
        oplog=oplog,
        timeout=REENCODE_TIMEOUT_SECONDS,
        output_path=reencode_path,
        stop=stop,
    )
    probe_json(ffprobe_bin, reencode_path)
    return reencode_path


class CachedRepairer:
    """Repair each source at most once per run, remembering the result."""

    def __init__(
        self,
        ffmpeg_bin: str,
        ffprobe_bin: str,
        *,
        oplog: OperationLog,
        stop: Optional[StopToken] = None,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.oplog = oplog
        self.stop = stop
        self._repaired: dict[Path, Path] = {}

    def __call__(self, input_path: Path) -> Path:
        cached = self._repaired.get(input_path)
        if cached is not None and cached.exists():
            return cached
        repaired = quick_fix_video(
            self.ffmpeg_bin,
            self.ffprobe_bin,
            input_path,
            oplog=self.oplog,
            stop=self.stop,
        )
        self._repaired[input_path] = repaired
        return repaired

    def cleanup(self) -> None:
        """Delete every repaired file produced so far."""
        for repaired in self._repaired.values():
            repaired.unlink(missing_ok=True)
        self._repaired.clear()
