#!/usr/bin/env python3
"""
Clip batcher: joins numbered MOVI clips into one synced movie through ffmpeg.

This script discovers clips, collects processing options, probes ffmpeg for
encoder/filter support, and encodes an MP4 (plus an optional MJPEG AVI).
"""

from __future__ import annotations

import argparse
import contextlib
import functools
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from catalog import (
    CLIP_PREFIX,
    Clip,
    catalog_pad_width,
    discover,
    format_index,
    index_bounds,
    select,
    write_concat_list,
)
from cli import (
    ask_user,
    cli_provided_options,
    collect_options,
    collect_range,
    option_flag,
    option_float,
    option_int,
    parse_args,
    validate_runtime_args,
)
from encoders import EncoderPlan, build_plan, describe_plan, resolve_encoder
from errors import ArchivalTranscodeFailed, PrimaryTranscodeFailed
from filters import (
    FilterChains,
    FilterStage,
    Stabilizer,
    build_archive_audio_chain,
    build_archive_video_chain,
    build_audio_chain,
    build_video_chain,
    serialize_chain,
)
from probe import get_concat_duration, get_frame_rate
from toolchain import Toolchain, progress_write, resolve_toolchain, stream_subprocess

CONCAT_LIST_NAME = "movi_concat.txt"
TRANSFORMS_NAME = "movi_transforms.trf"
PRIMARY_SUFFIX = "_synced.mp4"
ARCHIVE_SUFFIX = "_archive.avi"

PRIMARY_AUDIO_ARGS = ("-c:a", "aac", "-b:a", "192k")
ARCHIVE_VIDEO_ARGS = ("-c:v", "mjpeg", "-q:v", "3")
ARCHIVE_AUDIO_ARGS = ("-c:a", "pcm_s16le")

tracer = None


def init_tracing(endpoint: str) -> None:
    """Configure an OpenTelemetry tracer exporting spans to an OTLP/HTTP endpoint."""
    global tracer
    if tracer is not None:
        return

    resource = Resource.create({"service.name": "sync-clips"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)


def span(name: str):
    """Child span when tracing is on, otherwise a no-op context."""
    if tracer is None:
        return contextlib.nullcontext()
    return tracer.start_as_current_span(name)


def _traced(func):
    """Decorator that wraps a function call in a tracing span if tracing is enabled."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with span(func.__name__):
            return func(*args, **kwargs)

    return wrapper


@dataclass(frozen=True)
class TranscodeResult:
    output_path: Path
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class OutputPaths:
    primary: Path
    archive: Optional[Path]


# ── Output naming ─────────────────────────────────────────────────────────────


def unique_path(candidate: Path) -> Path:
    """Return `candidate`, or the first free `<stem>_N<suffix>` next to it."""
    if not candidate.exists():
        return candidate

    counter = 1
    while True:
        numbered = candidate.with_name(f"{candidate.stem}_{counter}{candidate.suffix}")
        if not numbered.exists():
            return numbered
        counter += 1


def build_output_stem(selection: Sequence[Clip], pad_width: int) -> str:
    first = format_index(selection[0].index, pad_width)
    last = format_index(selection[-1].index, pad_width)
    return f"{CLIP_PREFIX}{first}-{last}"


def assign_output_paths(
    output_dir: Path,
    selection: Sequence[Clip],
    pad_width: int,
    *,
    archive: bool,
) -> OutputPaths:
    stem = build_output_stem(selection, pad_width)
    primary = unique_path(output_dir / f"{stem}{PRIMARY_SUFFIX}")
    archive_path = unique_path(output_dir / f"{stem}{ARCHIVE_SUFFIX}") if archive else None
    return OutputPaths(primary=primary, archive=archive_path)


# ── Transcode driver ──────────────────────────────────────────────────────────


def format_fps(fps: float) -> str:
    return f"{fps:.3f}".rstrip("0").rstrip(".")


def build_transcode_command(
    ffmpeg_bin: str,
    concat_list: Path,
    video_args: Sequence[str],
    video_chain: Sequence[FilterStage],
    fps: float,
    audio_args: Sequence[str],
    audio_chain: Sequence[FilterStage],
    output_path: Path,
    *,
    extra_output_args: Sequence[str] = (),
) -> list[str]:
    cmd = [
        ffmpeg_bin,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-loglevel",
        "warning",
        "-nostats",
        "-progress",
        "pipe:1",
        "-fflags",
        "+genpts",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(concat_list),
        "-map",
        "0:v:0",
        "-map",
        "0:a:0?",
    ]

    video_filter = serialize_chain(video_chain)
    if video_filter:
        cmd.extend(["-filter:v", video_filter])
    cmd.extend(["-r", format_fps(fps)])
    cmd.extend(video_args)

    audio_filter = serialize_chain(audio_chain)
    if audio_filter:
        cmd.extend(["-filter:a", audio_filter])
    cmd.extend(audio_args)
    cmd.extend(extra_output_args)
    cmd.append(str(output_path))
    return cmd


def run_transcode(
    toolchain: Toolchain,
    concat_list: Path,
    video_args: Sequence[str],
    video_chain: Sequence[FilterStage],
    fps: float,
    audio_args: Sequence[str],
    audio_chain: Sequence[FilterStage],
    output_path: Path,
    *,
    extra_output_args: Sequence[str] = (),
    total_seconds: Optional[float] = None,
    dry_run: bool = False,
    desc: str = "Encoding",
) -> TranscodeResult:
    cmd = build_transcode_command(
        toolchain.ffmpeg,
        concat_list,
        video_args,
        video_chain,
        fps,
        audio_args,
        audio_chain,
        output_path,
        extra_output_args=extra_output_args,
    )
    if dry_run:
        print(f"[DRY RUN] {' '.join(cmd)}")
        return TranscodeResult(output_path=output_path, returncode=0)

    returncode = stream_subprocess(cmd, total_seconds=total_seconds, desc=desc)
    return TranscodeResult(output_path=output_path, returncode=returncode)


def encode_primary(
    toolchain: Toolchain,
    concat_list: Path,
    plan: EncoderPlan,
    chains: FilterChains,
    fps: float,
    output_path: Path,
    **kwargs,
) -> TranscodeResult:
    result = run_transcode(
        toolchain,
        concat_list,
        list(plan.args) + ["-pix_fmt", plan.pix_fmt],
        chains.video,
        fps,
        PRIMARY_AUDIO_ARGS,
        chains.audio,
        output_path,
        extra_output_args=("-movflags", "+faststart"),
        desc="MP4",
        **kwargs,
    )
    if not result.ok:
        raise PrimaryTranscodeFailed(output_path, result.returncode)
    return result


def encode_archive(
    toolchain: Toolchain,
    concat_list: Path,
    fps: float,
    output_path: Path,
    **kwargs,
) -> TranscodeResult:
    result = run_transcode(
        toolchain,
        concat_list,
        ARCHIVE_VIDEO_ARGS,
        build_archive_video_chain(),
        fps,
        ARCHIVE_AUDIO_ARGS,
        build_archive_audio_chain(),
        output_path,
        desc="AVI",
        **kwargs,
    )
    if not result.ok:
        raise ArchivalTranscodeFailed(output_path, result.returncode)
    return result


# ── Pipeline ──────────────────────────────────────────────────────────────────


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


def format_size(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def build_filter_chains(
    toolchain: Toolchain,
    options: Mapping[str, str],
    *,
    pix_fmt: str,
    concat_list: Path,
    transforms_path: Path,
    dry_run: bool = False,
) -> FilterChains:
    offset_ms = option_int(options, "offset_ms")
    audio = build_audio_chain(
        offset_ms=offset_ms,
        highpass_hz=option_float(options, "highpass_hz"),
        denoise_nr=option_float(options, "denoise_nr"),
    )

    stabilizer = None
    if option_flag(options, "stabilize"):
        stabilizer = Stabilizer(
            toolchain.ffmpeg,
            concat_list,
            transforms_path,
            tier=options["stab_tier"].strip().lower(),
            smoothing=option_int(options, "smoothing"),
            dry_run=dry_run,
        )
    with span("stabilization"):
        video = build_video_chain(
            toolchain.ffmpeg,
            offset_ms=offset_ms,
            pix_fmt=pix_fmt,
            stabilizer=stabilizer,
            deflicker=option_flag(options, "deflicker"),
        )
    return FilterChains(audio=tuple(audio), video=tuple(video))


def run_pipeline(args: argparse.Namespace) -> int:
    validate_runtime_args(args)

    clips_dir = Path(args.clips_dir).expanduser().resolve()
    if not clips_dir.is_dir():
        raise FileNotFoundError(f"Clips directory not found: {clips_dir}")
    output_dir = Path(args.output_dir).expanduser().resolve() if args.output_dir else clips_dir
    work_dir = Path(args.work_dir).expanduser().resolve() if args.work_dir else clips_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    toolchain = resolve_toolchain()

    with span("catalog"):
        catalog = discover(clips_dir)
    ask = None if args.yes else ask_user
    start, end = collect_range(args.start, args.end, bounds=index_bounds(catalog), ask=ask)
    selection = select(catalog, start, end)
    options = collect_options(ask=ask, provided=cli_provided_options(args))
    pad_width = catalog_pad_width(catalog)

    concat_list = write_concat_list(selection, work_dir / CONCAT_LIST_NAME)
    transforms_path = work_dir / TRANSFORMS_NAME
    fps = get_frame_rate(toolchain.ffprobe, selection[0].path)

    requested_encoder = options["encoder"].strip()
    with span("encoder"):
        encoder = resolve_encoder(toolchain.ffmpeg, requested_encoder, dry_run=args.dry_run)
        plan = build_plan(encoder, option_float(options, "crf"), options["preset"].strip())

    outputs = assign_output_paths(
        output_dir,
        selection,
        pad_width,
        archive=option_flag(options, "archive"),
    )

    print("\n" + "=" * 60)
    print("Clip Batcher - ffmpeg")
    if args.dry_run:
        print("*** DRY RUN MODE ***")
    print("=" * 60)
    print(f"Clips:   {clips_dir}")
    print(
        f"Range:   {format_index(start, pad_width)}-{format_index(end, pad_width)} "
        f"({len(selection)} clip(s), {format_size(sum(clip.size for clip in selection))})"
    )
    print(f"Encoder: {describe_plan(plan, requested_encoder)}")
    print(f"FPS:     {format_fps(fps)}")
    print(f"Output:  {outputs.primary}")
    if outputs.archive:
        print(f"Archive: {outputs.archive}")
    print("=" * 60 + "\n")

    total_start = time.time()
    chains = build_filter_chains(
        toolchain,
        options,
        pix_fmt=plan.pix_fmt,
        concat_list=concat_list,
        transforms_path=transforms_path,
        dry_run=args.dry_run,
    )
    total_seconds = None if args.dry_run else get_concat_duration(toolchain.ffprobe, concat_list)

    print("Encoding MP4...")
    step_start = time.time()
    with span("primary_encode"):
        encode_primary(
            toolchain,
            concat_list,
            plan,
            chains,
            fps,
            outputs.primary,
            total_seconds=total_seconds,
            dry_run=args.dry_run,
        )
    print(f"  Time: {format_time(time.time() - step_start)}\n")

    if outputs.archive:
        print("Encoding AVI archive...")
        step_start = time.time()
        with span("archive_encode"):
            try:
                encode_archive(
                    toolchain,
                    concat_list,
                    fps,
                    outputs.archive,
                    total_seconds=total_seconds,
                    dry_run=args.dry_run,
                )
            except ArchivalTranscodeFailed as exc:
                progress_write(f"Warning: {exc}. Keeping the MP4 only.")
        print(f"  Time: {format_time(time.time() - step_start)}\n")

    print("=" * 60)
    print("Complete!")
    print(f"Total time: {format_time(time.time() - total_start)}")
    for output in (outputs.primary, outputs.archive):
        if output and output.exists():
            print(f"Output: {output} ({format_size(output.stat().st_size)})")
    print("=" * 60 + "\n")
    return 0


@_traced
def run(args: argparse.Namespace) -> int:
    try:
        return run_pipeline(args)
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.trace:
        init_tracing(args.trace_endpoint)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
