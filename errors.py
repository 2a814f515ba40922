"""Errors raised while building and running a clip batch."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class MissingTool(FileNotFoundError):
    """A required external binary is not on PATH."""


class NoClipsFound(FileNotFoundError):
    def __init__(self, directory: Path, pattern: str) -> None:
        super().__init__(f"No clips matching {pattern} found in {directory}")
        self.directory = directory


class InvalidRange(ValueError):
    pass


class EmptyRange(ValueError):
    def __init__(self, start: int, end: int) -> None:
        super().__init__(f"No clips with index in [{start}, {end}]")
        self.start = start
        self.end = end


class UnknownEncoder(ValueError):
    def __init__(self, encoder: str, known: tuple[str, ...]) -> None:
        super().__init__(f"Unknown encoder: {encoder} (expected one of {', '.join(known)})")
        self.encoder = encoder


class EncoderUnavailable(RuntimeError):
    """The requested hardware encoder failed its probe encode."""


class UnsupportedFilter(RuntimeError):
    def __init__(self, name: str) -> None:
        super().__init__(f"ffmpeg filter '{name}' is not available in this build")
        self.name = name


class StabilizationAnalysisFailed(RuntimeError):
    def __init__(self, returncode: int, stderr: Optional[str] = None) -> None:
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"Stabilization analysis pass exited with {returncode}{detail}")
        self.returncode = returncode


class TranscodeFailed(RuntimeError):
    label = "Transcode"

    def __init__(self, output_path: Path, returncode: int) -> None:
        super().__init__(f"{self.label} of {output_path} failed (ffmpeg exit {returncode})")
        self.output_path = output_path
        self.returncode = returncode


class PrimaryTranscodeFailed(TranscodeFailed):
    label = "Primary encode"


class ArchivalTranscodeFailed(TranscodeFailed):
    label = "Archival encode"
