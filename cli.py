"""CLI: argument parsing, option collection, and runtime validation."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Sequence

from encoders import GENERIC_PRESETS, SOFTWARE_ENCODER, SUPPORTED_ENCODERS
from errors import InvalidRange
from filters import STAB_TIERS

# ── Constants ──────────────────────────────────────────────────────────────────

YES_VALUES = ("y", "yes", "1", "true", "on")


@dataclass(frozen=True)
class OptionSpec:
    key: str
    prompt: str
    default: str
    flag: str


OPTION_SPECS = (
    OptionSpec("offset_ms", "A/V offset in ms (+ delays audio, - pads video)", "0", "--offset-ms"),
    OptionSpec("highpass_hz", "High-pass cutoff (Hz)", "80", "--highpass"),
    OptionSpec("denoise_nr", "Noise reduction strength (dB)", "12", "--denoise"),
    OptionSpec("stabilize", "Stabilize video? (y/n)", "n", "--stabilize"),
    OptionSpec("stab_tier", f"Fallback stabilizer tier ({'/'.join(STAB_TIERS)})", "med", "--stab-tier"),
    OptionSpec("smoothing", "Stabilizer smoothing (frames)", "15", "--smoothing"),
    OptionSpec("deflicker", "Deflicker video? (y/n)", "y", "--deflicker"),
    OptionSpec("encoder", f"Video encoder ({', '.join(SUPPORTED_ENCODERS)})", SOFTWARE_ENCODER, "--encoder"),
    OptionSpec("crf", "Quality (CRF-like, lower is better)", "19", "--crf"),
    OptionSpec("preset", "Encoder preset", "slow", "--preset"),
    OptionSpec("archive", "Also write an MJPEG AVI archive? (y/n)", "n", "--archive"),
)

OPTION_DEFAULTS = MappingProxyType({spec.key: spec.default for spec in OPTION_SPECS})

AskFn = Callable[[str, str], str]


# ── Option collection ──────────────────────────────────────────────────────────


def ask_user(prompt: str, default: str) -> str:
    """Prompt on stdin; end of input counts as an empty answer."""
    try:
        return input(f"{prompt} [{default}]: ")
    except EOFError:
        return ""


def collect_options(
    specs: Sequence[OptionSpec] = OPTION_SPECS,
    *,
    ask: Optional[AskFn] = ask_user,
    provided: Optional[Mapping[str, Optional[str]]] = None,
) -> Mapping[str, str]:
    """Fill every option from `provided`, then `ask`, then its default.

    Blank answers take the default. Pass ask=None to accept defaults
    without prompting.
    """
    provided = provided or {}
    values: dict[str, str] = {}
    for spec in specs:
        answer = provided.get(spec.key)
        if answer is None:
            answer = ask(spec.prompt, spec.default) if ask is not None else ""
        answer = answer.strip()
        values[spec.key] = answer if answer else spec.default
    return MappingProxyType(values)


def option_int(options: Mapping[str, str], key: str) -> int:
    try:
        return int(float(options[key]))
    except (KeyError, ValueError, OverflowError):
        return int(OPTION_DEFAULTS[key])


def option_float(options: Mapping[str, str], key: str) -> float:
    try:
        return float(options[key])
    except (KeyError, ValueError):
        return float(OPTION_DEFAULTS[key])


def option_flag(options: Mapping[str, str], key: str) -> bool:
    return options.get(key, OPTION_DEFAULTS[key]).strip().lower() in YES_VALUES


def parse_index(value: str, label: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise InvalidRange(f"{label} index must be an integer, got {value!r}") from exc


def collect_range(
    start: Optional[int],
    end: Optional[int],
    *,
    bounds: tuple[int, int],
    ask: Optional[AskFn] = ask_user,
) -> tuple[int, int]:
    """Resolve the clip range, prompting with catalog defaults for missing ends."""
    low, high = bounds
    if start is None:
        answer = ask("Start clip index", str(low)) if ask is not None else ""
        start = parse_index(answer, "Start") if answer.strip() else low
    if end is None:
        answer = ask("End clip index", str(high)) if ask is not None else ""
        end = parse_index(answer, "End") if answer.strip() else high
    if start > end:
        raise InvalidRange(f"Start index {start} is greater than end index {end}")
    return start, end


def cli_provided_options(args: argparse.Namespace) -> dict[str, Optional[str]]:
    return {spec.key: getattr(args, spec.key, None) for spec in OPTION_SPECS}


# ── Arguments ──────────────────────────────────────────────────────────────────


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.start is not None and args.start < 0:
        raise InvalidRange("Start index must be >= 0.")
    if args.end is not None and args.end < 0:
        raise InvalidRange("End index must be >= 0.")
    if args.start is not None and args.end is not None and args.start > args.end:
        raise InvalidRange(f"Start index {args.start} is greater than end index {args.end}")
    encoder = getattr(args, "encoder", None)
    if encoder is not None and encoder not in SUPPORTED_ENCODERS:
        raise ValueError(
            f"Unsupported encoder: {encoder} (expected one of {', '.join(SUPPORTED_ENCODERS)})"
        )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Join numbered MOVI clips into one synced, cleaned-up movie with ffmpeg",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("start", type=int, nargs="?", default=None, help="First clip index")
    parser.add_argument("end", type=int, nargs="?", default=None, help="Last clip index")
    parser.add_argument(
        "-d",
        "--clips-dir",
        type=str,
        default=".",
        help="Directory holding MOVI<digits>.avi clips",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        type=str,
        default=None,
        help="Directory for the output movie (default: clips dir)",
    )
    parser.add_argument(
        "--work-dir",
        type=str,
        default=None,
        help="Directory for the concat list and stabilization data (default: clips dir)",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Accept defaults for anything not given on the command line",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print commands without executing")
    parser.add_argument("--trace", action="store_true", help="Export OpenTelemetry spans")
    parser.add_argument(
        "--trace-endpoint",
        type=str,
        default="http://localhost:4318/v1/traces",
        help="OTLP/HTTP endpoint used with --trace",
    )

    options = parser.add_argument_group("processing options (prompted when omitted)")
    for spec in OPTION_SPECS:
        kwargs: dict[str, object] = {
            "dest": spec.key,
            "type": str,
            "default": argparse.SUPPRESS,
            "help": f"{spec.prompt} (default: {spec.default})",
        }
        if spec.key == "encoder":
            kwargs["choices"] = SUPPORTED_ENCODERS
        elif spec.key == "preset":
            kwargs["metavar"] = "{" + ",".join(GENERIC_PRESETS) + "}"
        elif spec.key == "stab_tier":
            kwargs["metavar"] = "{" + ",".join(STAB_TIERS) + "}"
        options.add_argument(spec.flag, **kwargs)

    return parser.parse_args(argv)
