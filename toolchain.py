"""Toolchain: binary resolution and subprocess wrappers."""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from tqdm import tqdm

from errors import MissingTool

REQUIRED_BINARIES = ("ffmpeg", "ffprobe")


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str


def progress_write(message: str) -> None:
    """Write a message without tearing an active tqdm progress bar."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        timeout=timeout,
    )


def parse_progress_seconds(line: str) -> Optional[float]:
    """Return elapsed output seconds from an ffmpeg `-progress` key=value line."""
    key, sep, value = line.strip().partition("=")
    if not sep or key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        # ffmpeg reports out_time_ms in microseconds as well
        micros = int(value)
    except ValueError:
        return None
    if micros < 0:
        return None
    return micros / 1_000_000


def stream_subprocess(
    cmd: Sequence[str],
    *,
    total_seconds: Optional[float] = None,
    desc: str = "Encoding",
) -> int:
    """Run an ffmpeg command emitting `-progress pipe:1` and mirror it in a tqdm bar.

    stderr is left attached to the terminal so ffmpeg warnings stay visible.
    Returns the process exit status.
    """
    total = round(total_seconds, 1) if total_seconds else None
    with subprocess.Popen(
        [str(part) for part in cmd],
        stdout=subprocess.PIPE,
        text=True,
    ) as proc, tqdm(total=total, desc=desc, unit="s", leave=False) as bar:
        assert proc.stdout is not None
        for line in proc.stdout:
            seconds = parse_progress_seconds(line)
            if seconds is None:
                continue
            if total is not None:
                seconds = min(seconds, total)
            bar.update(round(seconds - bar.n, 1))
        return proc.wait()


def resolve_toolchain() -> Toolchain:
    """Resolve runtime binaries and raise a clear dependency error."""
    resolved = {name: shutil.which(name) for name in REQUIRED_BINARIES}
    missing = [name for name, path in resolved.items() if not path]
    if missing:
        raise MissingTool(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install with Homebrew (macOS) or your system package manager."
        )

    return Toolchain(ffmpeg=resolved["ffmpeg"], ffprobe=resolved["ffprobe"])
