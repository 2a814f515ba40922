"""Encoder plans: per-family quality clamping and preset translation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from errors import EncoderUnavailable, UnknownEncoder
from probe import check_encoder
from toolchain import progress_write

SOFTWARE_ENCODER = "libx264"

GENERIC_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
    "placebo",
)

NVENC_PRESETS = {
    "ultrafast": "p1",
    "superfast": "p1",
    "veryfast": "p2",
    "faster": "p3",
    "fast": "p4",
    "medium": "p5",
    "slow": "p6",
    "slower": "p7",
    "veryslow": "p7",
    "placebo": "p7",
}

QSV_PRESETS = ("veryfast", "faster", "fast", "medium", "slow", "slower", "veryslow")


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def format_quality(value: float) -> str:
    """Render 19.0 as "19" and 19.5 as "19.5" for ffmpeg arguments."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


@dataclass(frozen=True)
class EncoderPlan:
    encoder: str
    args: tuple[str, ...]
    pix_fmt: str
    quality: float


@dataclass(frozen=True)
class SoftwareFamily:
    pix_fmt: str = "yuv420p"

    def build_args(self, encoder: str, quality: float, preset: str) -> tuple[list[str], float]:
        return (
            ["-c:v", encoder, "-preset", preset, "-crf", format_quality(quality)],
            quality,
        )


@dataclass(frozen=True)
class NvencFamily:
    """NVENC: VBR anchored on -cq with no bitrate ceiling."""

    lower: int
    upper: int
    pix_fmt: str = "yuv420p"
    presets: dict[str, str] = field(default_factory=lambda: dict(NVENC_PRESETS))
    fallback_preset: str = "p6"

    def build_args(self, encoder: str, quality: float, preset: str) -> tuple[list[str], float]:
        cq = round(clamp(quality, self.lower, self.upper))
        vendor_preset = self.presets.get(preset, self.fallback_preset)
        args = [
            "-c:v", encoder,
            "-preset", vendor_preset,
            "-rc", "vbr",
            "-cq", str(cq),
            "-b:v", "0",
        ]
        return args, cq


@dataclass(frozen=True)
class QsvFamily:
    lower: int
    upper: int
    pix_fmt: str = "nv12"
    look_ahead: int = 1
    fallback_preset: str = "slow"

    def build_args(self, encoder: str, quality: float, preset: str) -> tuple[list[str], float]:
        global_quality = round(clamp(quality, self.lower, self.upper))
        qsv_preset = preset if preset in QSV_PRESETS else self.fallback_preset
        args = [
            "-c:v", encoder,
            "-preset", qsv_preset,
            "-global_quality", str(global_quality),
            "-look_ahead", str(self.look_ahead),
        ]
        return args, global_quality


@dataclass(frozen=True)
class AmfFamily:
    """AMF: constant QP, two steps below the CRF-like input, shared by I/P/B frames."""

    lower: int
    upper: int
    pix_fmt: str = "nv12"

    def build_args(self, encoder: str, quality: float, preset: str) -> tuple[list[str], float]:
        qp = round(clamp(quality - 2, self.lower, self.upper))
        args = [
            "-c:v", encoder,
            "-rc", "cqp",
            "-qp_i", str(qp),
            "-qp_p", str(qp),
            "-qp_b", str(qp),
        ]
        return args, qp


ENCODER_FAMILIES = {
    SOFTWARE_ENCODER: SoftwareFamily(),
    "h264_nvenc": NvencFamily(lower=15, upper=28),
    "hevc_nvenc": NvencFamily(lower=15, upper=30),
    "h264_qsv": QsvFamily(lower=15, upper=28),
    "hevc_qsv": QsvFamily(lower=15, upper=30),
    "h264_amf": AmfFamily(lower=14, upper=26),
    "hevc_amf": AmfFamily(lower=14, upper=28),
}

SUPPORTED_ENCODERS = tuple(ENCODER_FAMILIES)


def get_family(encoder: str):
    family = ENCODER_FAMILIES.get(encoder)
    if family is None:
        raise UnknownEncoder(encoder, SUPPORTED_ENCODERS)
    return family


def build_plan(encoder: str, quality: float, preset: str) -> EncoderPlan:
    family = get_family(encoder)
    args, effective_quality = family.build_args(encoder, quality, preset)
    return EncoderPlan(
        encoder=encoder,
        args=tuple(args),
        pix_fmt=family.pix_fmt,
        quality=effective_quality,
    )


def resolve_encoder(ffmpeg_bin: str, encoder: str, *, dry_run: bool = False) -> str:
    """Return `encoder` if it works here, else the software encoder.

    Unknown identifiers are fatal; a failed hardware probe is not.
    """
    get_family(encoder)
    if encoder == SOFTWARE_ENCODER or dry_run:
        return encoder

    try:
        check_encoder(ffmpeg_bin, encoder)
    except EncoderUnavailable as exc:
        progress_write(f"Warning: {exc}. Falling back to {SOFTWARE_ENCODER}.")
        return SOFTWARE_ENCODER
    return encoder


def describe_plan(plan: EncoderPlan, requested: Optional[str] = None) -> str:
    label = plan.encoder
    if requested and requested != plan.encoder:
        label = f"{plan.encoder} (requested {requested})"
    return f"{label}, quality {format_quality(plan.quality)}, {plan.pix_fmt}"
