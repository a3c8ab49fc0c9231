from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

from ..errors import CancellationError, ConversionError
from ..processes import ProcessRunner
from ..tools import resolve_ffmpeg_path
from . import ProgressCallback, output_path_for, report

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"Duration: (\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
TIME_RE = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
H264_CONTAINERS = ("mp4", "mov", "mkv")
STDERR_TAIL = 1200


def _to_seconds(match: re.Match) -> float:
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_duration(text: str) -> float | None:
    match = DURATION_RE.search(text)
    return _to_seconds(match) if match else None


def parse_elapsed(chunk: str) -> float | None:
    """Latest ``time=`` stamp in a chunk of ffmpeg status output."""
    matches = list(TIME_RE.finditer(chunk))
    return _to_seconds(matches[-1]) if matches else None


def compute_progress(elapsed: float, duration: float) -> int:
    if duration <= 0:
        return 0
    return max(0, min(round(elapsed / duration * 100), 100))


def build_ffmpeg_command(ffmpeg: str, input_path: Path, output_path: Path, output_format: str, options: dict) -> list[str]:
    cmd = [ffmpeg, "-nostdin", "-i", str(input_path)]

    if options.get("resolution"):
        cmd.extend(["-s", str(options["resolution"])])
    if options.get("frameRate"):
        cmd.extend(["-r", str(options["frameRate"])])
    if options.get("videoBitrate"):
        cmd.extend(["-b:v", str(options["videoBitrate"])])
    if options.get("audioBitrate"):
        cmd.extend(["-b:a", str(options["audioBitrate"])])

    if output_format in H264_CONTAINERS:
        cmd.extend(["-c:v", "libx264", "-pix_fmt", "yuv420p"])

    cmd.extend(["-y", str(output_path)])
    return cmd


def convert_video(
    input_path: Path,
    output_format: str,
    output_dir: Path,
    options: dict | None = None,
    progress_cb: ProgressCallback | None = None,
    runner: ProcessRunner | None = None,
    ffmpeg: str | None = None,
) -> Path:
    runner = runner or ProcessRunner.detached()
    ffmpeg = ffmpeg or resolve_ffmpeg_path()
    if not ffmpeg:
        raise ConversionError("FFmpeg not found; set FFMPEG_PATH or install ffmpeg")

    output_path = output_path_for(Path(input_path), output_dir, output_format)
    cmd = build_ffmpeg_command(ffmpeg, Path(input_path), output_path, output_format, options or {})
    logger.info("FFmpeg command: %s", " ".join(cmd))

    try:
        process = runner.spawn(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
    except OSError as exc:
        raise ConversionError(f"FFmpeg process error: {exc}") from exc

    captured = ""
    duration: float | None = None
    last_progress = 0
    try:
        assert process.stderr is not None
        for raw in iter(lambda: process.stderr.read1(4096), b""):
            chunk = raw.decode("utf-8", errors="replace")
            captured = (captured + chunk)[-64 * 1024:]
            if duration is None:
                duration = parse_duration(captured)
            elapsed = parse_elapsed(chunk)
            if duration and elapsed is not None:
                progress = compute_progress(elapsed, duration)
                if progress > last_progress:
                    last_progress = progress
                    report(progress_cb, progress)
        returncode = process.wait()
    finally:
        if process.stderr is not None:
            process.stderr.close()
        runner.release(process)

    if runner.cancelled:
        output_path.unlink(missing_ok=True)
        raise CancellationError("Cancelled by user")

    if returncode != 0:
        detail = captured.strip()[-STDERR_TAIL:] or "no diagnostic output"
        raise ConversionError(f"FFmpeg exited with code {returncode}: {detail}")

    report(progress_cb, 100)
    return output_path
