"""Capability and metadata probes against ffmpeg/ffprobe."""

from __future__ import annotations

import functools
import json
import subprocess
from pathlib import Path
from typing import Optional

from errors import EncoderUnavailable
from toolchain import run_subprocess

DEFAULT_FPS = 30.0
ENCODER_PROBE_TIMEOUT = 20.0

# NVENC rejects frames narrower than ~145px, so keep the probe above that.
ENCODER_PROBE_SOURCE = "color=c=black:s=256x144:r=25:d=0.2"


@functools.lru_cache(maxsize=None)
def list_filters(ffmpeg_bin: str) -> frozenset[str]:
    """Return the filter names advertised by `ffmpeg -filters`.

    Cached per binary; an unrunnable binary advertises nothing.
    """
    try:
        result = run_subprocess(
            [ffmpeg_bin, "-hide_banner", "-filters"],
            check=False,
            capture_output=True,
        )
    except (OSError, subprocess.SubprocessError):
        return frozenset()
    if result.returncode != 0:
        return frozenset()

    names: set[str] = set()
    for line in result.stdout.splitlines():
        tokens = line.split()
        # Rows look like " T.C deflicker  V->V  Remove temporal frame luminance variations."
        if len(tokens) >= 3 and "->" in tokens[2]:
            names.add(tokens[1])
    return frozenset(names)


def supports_filter(ffmpeg_bin: str, name: str) -> bool:
    return name in list_filters(ffmpeg_bin)


def build_encoder_probe_command(ffmpeg_bin: str, encoder: str) -> list[str]:
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "error",
        "-f",
        "lavfi",
        "-i",
        ENCODER_PROBE_SOURCE,
        "-frames:v",
        "3",
        "-c:v",
        encoder,
        "-f",
        "null",
        "-",
    ]


def check_encoder(ffmpeg_bin: str, encoder: str) -> None:
    """Run a tiny synthetic encode with `encoder`, raising EncoderUnavailable on failure.

    Output goes to the null muxer, so nothing is written to disk.
    """
    cmd = build_encoder_probe_command(ffmpeg_bin, encoder)
    try:
        result = run_subprocess(
            cmd,
            check=False,
            capture_output=True,
            timeout=ENCODER_PROBE_TIMEOUT,
        )
    except subprocess.TimeoutExpired as exc:
        raise EncoderUnavailable(f"{encoder} probe timed out after {exc.timeout:.0f}s") from exc
    except OSError as exc:
        raise EncoderUnavailable(f"{encoder} probe could not start: {exc}") from exc

    if result.returncode != 0:
        stderr = result.stderr.strip().splitlines()
        detail = stderr[-1] if stderr else f"exit {result.returncode}"
        raise EncoderUnavailable(f"{encoder} is not usable on this machine: {detail}")


def supports_encoder(ffmpeg_bin: str, encoder: str) -> bool:
    try:
        check_encoder(ffmpeg_bin, encoder)
    except EncoderUnavailable:
        return False
    return True


def _rate_or_none(value: Optional[str]) -> Optional[float]:
    if not value:
        return None

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return None
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError):
        return None

    if framerate <= 0 or framerate > 240:
        return None
    return framerate


def parse_framerate(value: str) -> float:
    """Parse ffprobe framerate strings like 30000/1001 safely."""
    framerate = _rate_or_none(value)
    return DEFAULT_FPS if framerate is None else framerate


def get_frame_rate(ffprobe_bin: str, clip_path: Path) -> float:
    """Read the first video stream's frame rate, falling back to DEFAULT_FPS."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=avg_frame_rate,r_frame_rate",
        "-print_format",
        "json",
        str(clip_path),
    ]
    try:
        result = run_subprocess(cmd, check=False, capture_output=True)
    except OSError:
        return DEFAULT_FPS
    if result.returncode != 0:
        return DEFAULT_FPS

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError:
        return DEFAULT_FPS

    streams = payload.get("streams") or []
    if not streams:
        return DEFAULT_FPS
    stream = streams[0]
    # avg_frame_rate is 0/0 when the container does not report it.
    for key in ("avg_frame_rate", "r_frame_rate"):
        framerate = _rate_or_none(stream.get(key))
        if framerate is not None:
            return framerate
    return DEFAULT_FPS


def get_concat_duration(ffprobe_bin: str, concat_list: Path) -> Optional[float]:
    """Return the total duration of a concat manifest in seconds, or None if unknown."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(concat_list),
        "-show_entries",
        "format=duration",
        "-print_format",
        "json",
    ]
    try:
        result = run_subprocess(cmd, check=False, capture_output=True)
    except OSError:
        return None
    if result.returncode != 0:
        return None

    try:
        payload = json.loads(result.stdout)
        duration = float(payload.get("format", {}).get("duration"))
    except (json.JSONDecodeError, TypeError, ValueError):
        return None
    return duration if duration > 0 else None
