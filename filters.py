"""Filter chains: typed stage descriptors, chain builders, and the stabilizer."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

from errors import StabilizationAnalysisFailed, UnsupportedFilter
from probe import supports_filter
from toolchain import progress_write, run_subprocess

ParamValue = Union[str, int, float, Path]

RESAMPLE_ASYNC = 1000
COMPRESSOR_PARAMS = (
    ("threshold", "-18dB"),
    ("ratio", 3),
    ("attack", 20),
    ("release", 250),
    ("knee", 2.5),
    ("makeup", 2),
)
LIMITER_CEILING = 0.95

DEFLICKER_FILTER = "deflicker"
TWO_PASS_DETECT = "vidstabdetect"
TWO_PASS_TRANSFORM = "vidstabtransform"
SINGLE_PASS_STABILIZER = "deshake"

STAB_TIERS = ("off", "mild", "med", "strong")
DESHAKE_TIERS = {
    "off": {"rx": 8, "ry": 8, "edge": "blank"},
    "mild": {"rx": 16, "ry": 16, "edge": "mirror"},
    "med": {"rx": 32, "ry": 32, "edge": "mirror"},
    "strong": {"rx": 64, "ry": 64, "edge": "clamp"},
}
DESHAKE_DEFAULT_TIER = "mild"

VIDSTAB_DETECT_PARAMS = (("shakiness", 5), ("accuracy", 15))
VIDSTAB_OPTZOOM = 1
VIDSTAB_INTERPOLATION = "bicubic"
VIDSTAB_CROP = "black"


def escape_filter_path(path: Union[str, Path]) -> str:
    """Escape a filesystem path for use as a filter option value.

    Backslashes become forward slashes, then colons (Windows drive letters)
    and single quotes are backslash-escaped.
    """
    text = str(path).replace("\\", "/")
    return text.replace(":", r"\:").replace("'", r"\'")


def _format_value(value: ParamValue) -> str:
    if isinstance(value, Path):
        return escape_filter_path(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@dataclass(frozen=True)
class FilterStage:
    name: str
    params: tuple[tuple[str, ParamValue], ...] = ()

    def render(self) -> str:
        if not self.params:
            return self.name
        options = ":".join(f"{key}={_format_value(value)}" for key, value in self.params)
        return f"{self.name}={options}"

    def param(self, key: str) -> Optional[ParamValue]:
        for name, value in self.params:
            if name == key:
                return value
        return None


def stage(name: str, *params: tuple[str, ParamValue]) -> FilterStage:
    return FilterStage(name, tuple(params))


def serialize_chain(stages: Sequence[FilterStage]) -> Optional[str]:
    """Join stages into ffmpeg's comma-separated chain syntax; None when empty."""
    if not stages:
        return None
    return ",".join(item.render() for item in stages)


@dataclass(frozen=True)
class FilterChains:
    audio: tuple[FilterStage, ...]
    video: tuple[FilterStage, ...]


# ── Offset ────────────────────────────────────────────────────────────────────


def offset_stages(offset_ms: int) -> tuple[Optional[FilterStage], Optional[FilterStage]]:
    """Return (audio_stage, video_stage) compensating a constant A/V offset.

    Positive offsets delay audio; negative offsets pad black frames ahead of
    video. At most one of the two is set.
    """
    if offset_ms > 0:
        return stage("adelay", ("delays", offset_ms), ("all", 1)), None
    if offset_ms < 0:
        seconds = abs(offset_ms) / 1000
        return None, stage(
            "tpad",
            ("start_duration", seconds),
            ("start_mode", "add"),
            ("color", "black"),
        )
    return None, None


# ── Audio ─────────────────────────────────────────────────────────────────────


def build_audio_chain(
    *,
    offset_ms: int,
    highpass_hz: float,
    denoise_nr: float,
) -> list[FilterStage]:
    audio_offset, _ = offset_stages(offset_ms)
    stages: list[FilterStage] = []
    if audio_offset is not None:
        stages.append(audio_offset)
    stages.extend(
        [
            stage("aresample", ("async", RESAMPLE_ASYNC)),
            stage("highpass", ("f", highpass_hz)),
            stage("afftdn", ("nr", denoise_nr)),
            FilterStage("acompressor", COMPRESSOR_PARAMS),
            stage("alimiter", ("limit", LIMITER_CEILING)),
        ]
    )
    return stages


def build_archive_audio_chain() -> list[FilterStage]:
    return [stage("aresample", ("async", RESAMPLE_ASYNC))]


# ── Stabilization ─────────────────────────────────────────────────────────────


class StabilizationState(enum.Enum):
    UNATTEMPTED = "unattempted"
    PROBING_SUPPORT = "probing_support"
    ANALYZING = "analyzing"
    ANALYSIS_SUCCEEDED = "analysis_succeeded"
    ANALYSIS_FAILED = "analysis_failed"
    APPLY_STAGE = "apply_stage"


def deshake_stage(tier: str) -> FilterStage:
    params = DESHAKE_TIERS.get(tier, DESHAKE_TIERS[DESHAKE_DEFAULT_TIER])
    return FilterStage(SINGLE_PASS_STABILIZER, tuple(params.items()))


def vidstabdetect_stage(transforms_path: Path) -> FilterStage:
    return FilterStage(
        TWO_PASS_DETECT,
        VIDSTAB_DETECT_PARAMS + (("result", transforms_path),),
    )


def vidstabtransform_stage(transforms_path: Path, smoothing: int) -> FilterStage:
    return stage(
        TWO_PASS_TRANSFORM,
        ("input", transforms_path),
        ("smoothing", smoothing),
        ("optzoom", VIDSTAB_OPTZOOM),
        ("interpol", VIDSTAB_INTERPOLATION),
        ("crop", VIDSTAB_CROP),
    )


def build_analysis_command(
    ffmpeg_bin: str,
    concat_list: Path,
    transforms_path: Path,
) -> list[str]:
    """Analysis pass over the whole concat input; only the trajectory file is kept."""
    chain = serialize_chain(
        [stage("setpts", ("expr", "PTS-STARTPTS")), vidstabdetect_stage(transforms_path)]
    )
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-loglevel",
        "warning",
        "-fflags",
        "+genpts",
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(concat_list),
        "-vf",
        chain,
        "-an",
        "-f",
        "null",
        "-",
    ]


class Stabilizer:
    """Pick and configure one stabilization stage for the video chain.

    Two-pass vid.stab is preferred; missing filters or a failed analysis
    pass drop to the single-pass deshake table. `history` records each
    state entered.
    """

    def __init__(
        self,
        ffmpeg_bin: str,
        concat_list: Path,
        transforms_path: Path,
        *,
        tier: str,
        smoothing: int,
        dry_run: bool = False,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.concat_list = concat_list
        self.transforms_path = transforms_path
        self.tier = tier
        self.smoothing = smoothing
        self.dry_run = dry_run
        self.state = StabilizationState.UNATTEMPTED
        self.history = [self.state]
        self.stage: Optional[FilterStage] = None

    def _enter(self, state: StabilizationState) -> None:
        self.state = state
        self.history.append(state)

    def _apply(self, selected: FilterStage) -> FilterStage:
        self._enter(StabilizationState.APPLY_STAGE)
        self.stage = selected
        return selected

    def _fallback(self) -> FilterStage:
        return self._apply(deshake_stage(self.tier))

    def two_pass_supported(self) -> bool:
        return supports_filter(self.ffmpeg_bin, TWO_PASS_DETECT) and supports_filter(
            self.ffmpeg_bin, TWO_PASS_TRANSFORM
        )

    def analyze(self) -> None:
        cmd = build_analysis_command(self.ffmpeg_bin, self.concat_list, self.transforms_path)
        if self.dry_run:
            progress_write(f"[DRY RUN] {' '.join(cmd)}")
            return

        try:
            result = run_subprocess(cmd, check=False, capture_output=True)
        except OSError as exc:
            raise StabilizationAnalysisFailed(-1, str(exc)) from exc
        if result.returncode != 0:
            stderr = result.stderr.strip().splitlines() if result.stderr else []
            raise StabilizationAnalysisFailed(result.returncode, stderr[-1] if stderr else None)

    def resolve(self) -> FilterStage:
        if self.stage is not None:
            return self.stage

        self._enter(StabilizationState.PROBING_SUPPORT)
        if not self.two_pass_supported():
            progress_write(
                f"Warning: {TWO_PASS_DETECT}/{TWO_PASS_TRANSFORM} not available. "
                f"Using {SINGLE_PASS_STABILIZER} ({self.tier})."
            )
            return self._fallback()

        self._enter(StabilizationState.ANALYZING)
        print("Analyzing camera motion (stabilization pass 1/2)...")
        try:
            self.analyze()
        except StabilizationAnalysisFailed as exc:
            self._enter(StabilizationState.ANALYSIS_FAILED)
            progress_write(f"Warning: {exc}. Using {SINGLE_PASS_STABILIZER} ({self.tier}).")
            return self._fallback()

        self._enter(StabilizationState.ANALYSIS_SUCCEEDED)
        return self._apply(vidstabtransform_stage(self.transforms_path, self.smoothing))


# ── Video ─────────────────────────────────────────────────────────────────────


def require_filter(ffmpeg_bin: str, name: str) -> None:
    if not supports_filter(ffmpeg_bin, name):
        raise UnsupportedFilter(name)


def deflicker_stage() -> FilterStage:
    return stage(DEFLICKER_FILTER, ("mode", "pm"), ("size", 5))


def legalization_stages(pix_fmt: str) -> list[FilterStage]:
    return [
        stage("scale", ("in_range", "full"), ("out_range", "tv")),
        stage("format", ("pix_fmts", pix_fmt)),
    ]


def build_video_chain(
    ffmpeg_bin: str,
    *,
    offset_ms: int,
    pix_fmt: str,
    stabilizer: Optional[Stabilizer] = None,
    deflicker: bool = True,
) -> list[FilterStage]:
    _, video_offset = offset_stages(offset_ms)
    stages: list[FilterStage] = []
    # The trajectory file is indexed by source frame, so padding goes after it.
    if stabilizer is not None:
        stages.append(stabilizer.resolve())
    if video_offset is not None:
        stages.append(video_offset)
    if deflicker:
        try:
            require_filter(ffmpeg_bin, DEFLICKER_FILTER)
        except UnsupportedFilter as exc:
            progress_write(f"Warning: {exc}. Skipping deflicker.")
        else:
            stages.append(deflicker_stage())
    stages.extend(legalization_stages(pix_fmt))
    return stages


def build_archive_video_chain() -> list[FilterStage]:
    return [stage("format", ("pix_fmts", "yuvj420p"))]
