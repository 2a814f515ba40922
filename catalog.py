"""Clip catalog: discovery, range selection, and concat manifest output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from errors import EmptyRange, InvalidRange, NoClipsFound

CLIP_PREFIX = "MOVI"
CLIP_EXTENSION = "avi"
CLIP_PATTERN = re.compile(
    rf"^{CLIP_PREFIX}(\d+)\.{CLIP_EXTENSION}$",
    re.IGNORECASE,
)

CONCAT_LIST_ENCODING = "utf-8"


@dataclass(frozen=True)
class Clip:
    name: str
    path: Path
    index: int
    pad_width: int
    mtime: float
    size: int


def parse_clip_name(name: str) -> Optional[tuple[int, int]]:
    """Return (index, digit-run width) for a matching clip filename, else None."""
    match = CLIP_PATTERN.match(name)
    if not match:
        return None
    digits = match.group(1)
    return int(digits), len(digits)


def discover(directory: Path) -> list[Clip]:
    """List numbered clips in `directory`, sorted by index.

    Non-matching entries are ignored. When two files share an index
    (MOVI7.avi and MOVI007.avi), the first in name order is kept.
    """
    clips: dict[int, Clip] = {}
    for entry in sorted(directory.iterdir(), key=lambda p: p.name):
        if not entry.is_file():
            continue
        parsed = parse_clip_name(entry.name)
        if parsed is None:
            continue
        index, pad_width = parsed
        if index in clips:
            continue
        stat_info = entry.stat()
        clips[index] = Clip(
            name=entry.name,
            path=entry.resolve(),
            index=index,
            pad_width=pad_width,
            mtime=stat_info.st_mtime,
            size=stat_info.st_size,
        )

    if not clips:
        raise NoClipsFound(directory, f"{CLIP_PREFIX}<digits>.{CLIP_EXTENSION}")
    return [clips[index] for index in sorted(clips)]


def index_bounds(catalog: Sequence[Clip]) -> tuple[int, int]:
    indices = [clip.index for clip in catalog]
    return min(indices), max(indices)


def select(
    catalog: Sequence[Clip],
    start: Optional[int] = None,
    end: Optional[int] = None,
) -> list[Clip]:
    """Return clips with start <= index <= end, ascending.

    Missing bounds default to the catalog's minimum and maximum index.
    """
    low, high = index_bounds(catalog)
    start = low if start is None else start
    end = high if end is None else end
    if start > end:
        raise InvalidRange(f"Start index {start} is greater than end index {end}")

    selection = sorted(
        (clip for clip in catalog if start <= clip.index <= end),
        key=lambda clip: clip.index,
    )
    if not selection:
        raise EmptyRange(start, end)
    return selection


def catalog_pad_width(catalog: Sequence[Clip]) -> int:
    """Padding width for derived names, taken from the first clip only."""
    return catalog[0].pad_width


def format_index(index: int, pad_width: int) -> str:
    return f"{index:0{pad_width}d}"


def write_concat_list(clips: Sequence[Clip], concat_path: Path) -> Path:
    """Write an ffmpeg concat-demuxer manifest, one quoted path per clip."""
    lines: list[str] = []
    for clip in clips:
        escaped = str(clip.path).replace("'", r"'\''")
        lines.append(f"file '{escaped}'")
    concat_path.parent.mkdir(parents=True, exist_ok=True)
    concat_path.write_text("\n".join(lines) + "\n", encoding=CONCAT_LIST_ENCODING)
    return concat_path
