"""Command-line interface for batch frame alignment, source extraction and photometry.

Usage:
    astrolab align FRAME... -o OUTDIR [options]
    astrolab sources FRAME [--dark DARK] [options]
    astrolab photometry FRAME... --x X --y Y [options]
    python -m astrolab <command> ...
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import __version__
from .background import estimate_background, subtract_background
from .calibration import make_master_dark, subtract_dark
from .config import ON_ERROR_POLICIES, Settings, load_settings, settings_to_dict
from .detection import extract_sources, sources_to_table
from .errors import AstroLabError
from .io import load_frame, load_frames, save_frame, save_json
from .photometry import Aperture, aperture_light_curve, differential_flux
from .pipeline import align_frames

logger = logging.getLogger("astrolab")


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure the root logger with a console handler and an optional file handler."""
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S"))
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(file_handler)
    return root


def _settings(args: argparse.Namespace) -> Settings:
    return load_settings(args.config) if args.config else Settings()


def cmd_align(args: argparse.Namespace) -> int:
    settings = _settings(args)
    if args.detection_sigma is not None:
        settings.registration.detection_sigma = args.detection_sigma

    frames = load_frames(args.frames)
    stack = align_frames(
        frames,
        settings,
        on_error=args.on_error,
        workers=args.workers,
        timeout_s=args.timeout,
    )

    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    for i, frame in enumerate(stack):
        save_frame(out_dir / f"aligned_{i:03d}.fits", frame)

    report = stack.report()
    report["settings"] = settings_to_dict(settings)
    save_json(out_dir / "alignment_report.json", report)
    logger.info("Wrote %d aligned frame(s) to %s", len(stack), out_dir)
    return 0


def cmd_sources(args: argparse.Namespace) -> int:
    settings = _settings(args)
    bkg_cfg = settings.background
    nsigma = args.nsigma if args.nsigma is not None else settings.detection.nsigma

    frame = load_frame(args.frame)
    error_map = None
    if args.dark:
        dark = make_master_dark([load_frame(p) for p in args.dark])
        frame = subtract_dark(frame, dark)
        error_map = dark.data

    model = estimate_background(
        frame,
        args.box_size if args.box_size is not None else bkg_cfg.box_size,
        clip_sigma=bkg_cfg.clip_sigma,
        clip_maxiters=bkg_cfg.clip_maxiters,
        fill=bkg_cfg.fill,
        estimator=bkg_cfg.estimator,
        rms_estimator=bkg_cfg.rms_estimator,
    )
    sources = extract_sources(
        subtract_background(frame, model),
        error_map,
        nsigma=nsigma,
        box_size=settings.detection.box_size,
    )
    table = sources_to_table(sources)
    if args.limit:
        table = table.head(args.limit)

    if args.csv:
        table.to_csv(args.csv, index=False)
        logger.info("Wrote %d source(s) to %s", len(table), args.csv)
    else:
        print(table.to_string(index=False))
    return 0


def cmd_photometry(args: argparse.Namespace) -> int:
    settings = _settings(args)
    phot_cfg = settings.photometry
    radius = args.radius if args.radius is not None else phot_cfg.aperture_radius

    frames = load_frames(args.frames)
    if args.align:
        frames = list(align_frames(frames, settings))

    apertures = [Aperture(args.x, args.y, radius)]
    if args.comparison:
        apertures.append(Aperture(args.comparison[0], args.comparison[1], radius))

    annulus = None
    if phot_cfg.annulus_inner is not None and phot_cfg.annulus_outer is not None:
        annulus = (phot_cfg.annulus_inner, phot_cfg.annulus_outer)

    df = aperture_light_curve(frames, apertures, annulus=annulus)
    if args.comparison:
        df = differential_flux(df, "flux_0", "flux_1")

    if args.csv:
        df.to_csv(args.csv, index=False)
        logger.info("Wrote light curve with %d point(s) to %s", len(df), args.csv)
    else:
        print(df.to_string(index=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="astrolab",
        description="Align FITS frame series, extract sources and measure aperture photometry.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="JSON settings file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", type=Path, help="Also write logs to this file")
    sub = parser.add_subparsers(dest="command", required=True)

    p_align = sub.add_parser("align", help="Register frames onto the first frame")
    p_align.add_argument("frames", nargs="+", type=Path, help="FITS frames; the first is the reference")
    p_align.add_argument("-o", "--output-dir", required=True, type=Path)
    p_align.add_argument("--detection-sigma", type=float)
    p_align.add_argument("--on-error", choices=ON_ERROR_POLICIES)
    p_align.add_argument("--workers", type=int)
    p_align.add_argument("--timeout", type=float, help="Per-frame registration timeout in seconds")
    p_align.set_defaults(func=cmd_align)

    p_sources = sub.add_parser("sources", help="Extract point sources from one frame")
    p_sources.add_argument("frame", type=Path)
    p_sources.add_argument("--dark", nargs="+", type=Path, help="Dark frame(s); also used as error map")
    p_sources.add_argument("--nsigma", type=float)
    p_sources.add_argument("--box-size", type=int, help="Background mesh size (default: gcd of dimensions)")
    p_sources.add_argument("--limit", type=int, default=0)
    p_sources.add_argument("--csv", type=Path)
    p_sources.set_defaults(func=cmd_sources)

    p_phot = sub.add_parser("photometry", help="Aperture light curve at a fixed position")
    p_phot.add_argument("frames", nargs="+", type=Path)
    p_phot.add_argument("--x", type=float, required=True)
    p_phot.add_argument("--y", type=float, required=True)
    p_phot.add_argument("--radius", type=float)
    p_phot.add_argument("--comparison", nargs=2, type=float, metavar=("X", "Y"))
    p_phot.add_argument("--align", action="store_true", help="Register frames before measuring")
    p_phot.add_argument("--csv", type=Path)
    p_phot.set_defaults(func=cmd_photometry)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.log_file)
    try:
        return args.func(args)
    except AstroLabError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
