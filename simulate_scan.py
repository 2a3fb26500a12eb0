#!/usr/bin/env python3
"""
simulate_scan.py - Make a PDF look like it went through a document scanner.

Usage:
    python simulate_scan.py input.pdf -o output.pdf
    python simulate_scan.py input.pdf --rotation random --angle-range -1 1.5
    python simulate_scan.py *.pdf --output-dir ./scanned/ --settings scan.json
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent to path when running as script
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent))

from scansim.exceptions import DegenerateParameter
from scansim.pipeline import simulate_scan
from scansim.settings import (
    BlurType,
    ColorMode,
    GrayscaleMode,
    RotationType,
    ScanSettings,
)

DEFAULT_SUFFIX = "_scanned"


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Simulate a printed-and-scanned copy of a PDF.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python simulate_scan.py report.pdf -o report_scanned.pdf
  python simulate_scan.py report.pdf --color-mode diminished --blur gaussian
  python simulate_scan.py *.pdf --output-dir ./out/ --seed 7

Every page of the output is a single JPEG image:
  - skewed, dusted and scratched like a real scan
  - grayscale or color-shifted, optionally blurred
  - placed at the original page size
"""
    )

    parser.add_argument(
        "input",
        nargs="+",
        type=Path,
        help="Input PDF file(s)"
    )

    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        "-o", "--output",
        type=Path,
        help="Output file (single input only)"
    )
    output.add_argument(
        "--output-dir",
        type=Path,
        help="Output directory (for multiple files)"
    )

    parser.add_argument(
        "--suffix",
        default=DEFAULT_SUFFIX,
        help=f"Appended to the file name of generated files (default: {DEFAULT_SUFFIX})"
    )

    parser.add_argument(
        "--settings",
        type=Path,
        help="JSON settings file; flags below override it"
    )

    parser.add_argument(
        "-d", "--dpi",
        type=float,
        help="Scan resolution (default: 200, typical 100-450)"
    )
    parser.add_argument(
        "-q", "--quality",
        type=float,
        help="JPEG quality 0-100 (default: 20)"
    )
    parser.add_argument(
        "--rotation",
        choices=[t.value for t in RotationType],
        help="Skew: none, fixed angle or random per page (default: fixed)"
    )
    parser.add_argument(
        "--angle",
        type=float,
        help="Fixed skew in degrees (default: 1.5)"
    )
    parser.add_argument(
        "--angle-range",
        type=float,
        nargs=2,
        metavar=("LOW", "HIGH"),
        help="Random skew range in degrees (default: 0 1.5)"
    )

    tone = parser.add_mutually_exclusive_group()
    tone.add_argument(
        "--grayscale",
        choices=[m.value for m in GrayscaleMode],
        help="Grayscale contrast preset (default: high)"
    )
    tone.add_argument(
        "--color",
        action="store_true",
        help="Keep color (disables grayscale)"
    )
    parser.add_argument(
        "--color-mode",
        choices=[m.value for m in ColorMode],
        help="Color-shift preset; anything but normal implies --color (default: normal)"
    )

    parser.add_argument(
        "--dust",
        type=float,
        help="Dust amount 0-1 (default: 0.5)"
    )
    parser.add_argument(
        "--scratch",
        type=float,
        help="Scratch amount 0-1 (default: 0.3)"
    )
    parser.add_argument(
        "--blur",
        choices=[b.value for b in BlurType],
        help="Blur kernel (default: none)"
    )
    parser.add_argument(
        "--blur-radius",
        type=float,
        help="Blur radius at 100 dpi (default: 1)"
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Parallel workers (0 = auto, default: auto-detect CPU count)"
    )
    parser.add_argument(
        "--seed",
        type=int,
        help="Random seed for reproducible output"
    )
    parser.add_argument(
        "--page-timeout",
        type=float,
        help="Seconds a page may take before it is left unchanged"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output"
    )

    return parser.parse_args(argv)


def build_settings(args) -> ScanSettings:
    """Settings from the JSON file (if any) with command-line overrides."""
    settings = ScanSettings.from_json_file(args.settings) if args.settings else ScanSettings()

    changes = {}
    if args.dpi is not None:
        changes["dpi"] = args.dpi
    if args.quality is not None:
        changes["quality"] = args.quality
    if args.rotation is not None:
        changes["rotation_type"] = args.rotation
    if args.angle is not None:
        changes["rotation_fixed"] = args.angle
    if args.angle_range is not None:
        changes["rotation_range"] = tuple(args.angle_range)
    if args.grayscale is not None:
        changes["grayscale"] = True
        changes["grayscale_mode"] = args.grayscale
    if args.color:
        changes["grayscale"] = False
    if args.color_mode is not None:
        changes["color_mode"] = args.color_mode
        # A color shift only shows on a color scan
        if args.color_mode != ColorMode.NORMAL.value and args.grayscale is None:
            changes["grayscale"] = False
    if args.dust is not None:
        changes["dust_amount"] = args.dust
    if args.scratch is not None:
        changes["scratch_amount"] = args.scratch
    if args.blur is not None:
        changes["blur_type"] = args.blur
    if args.blur_radius is not None:
        changes["blur_radius"] = args.blur_radius

    return settings.with_changes(**changes) if changes else settings


def output_path_for(input_path: Path, output_dir: Path, suffix: str) -> Path:
    """Output file name: <stem><suffix>.pdf in output_dir."""
    return output_dir / f"{input_path.stem}{suffix}.pdf"


def print_progress(current: int, total: int):
    """Print progress bar."""
    width = 40
    filled = int(width * current / total)
    bar = "=" * filled + "-" * (width - filled)
    pct = current / total * 100
    print(f"\r[{bar}] {current}/{total} ({pct:.0f}%)", end="", file=sys.stderr)
    if current == total:
        print(file=sys.stderr)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = build_settings(args)
    except (DegenerateParameter, OSError, ValueError) as e:
        print(f"Error: Invalid settings: {e}", file=sys.stderr)
        sys.exit(2)

    for note in settings.outside_front_end_ranges():
        print(f"Warning: {note}", file=sys.stderr)

    # Validate inputs
    valid_inputs = []
    for p in args.input:
        if not p.exists():
            print(f"Error: File not found: {p}", file=sys.stderr)
            continue
        if p.suffix.lower() != ".pdf":
            print(f"Warning: Skipping non-PDF: {p}", file=sys.stderr)
            continue
        valid_inputs.append(p)

    if not valid_inputs:
        print("Error: No valid PDF files", file=sys.stderr)
        sys.exit(1)

    if len(valid_inputs) > 1 and args.output:
        print("Error: Use --output-dir for multiple files", file=sys.stderr)
        sys.exit(1)

    successes = 0
    for i, input_path in enumerate(valid_inputs):
        if args.output:
            output_path = args.output
        else:
            output_dir = args.output_dir or input_path.parent
            output_dir.mkdir(parents=True, exist_ok=True)
            output_path = output_path_for(input_path, output_dir, args.suffix)

        if len(valid_inputs) > 1:
            print(f"\n[{i+1}/{len(valid_inputs)}] {input_path.name}")

        result = simulate_scan(
            input_path,
            output_path,
            settings,
            max_workers=args.workers,
            seed=args.seed,
            page_timeout=args.page_timeout,
            progress_callback=print_progress
        )

        if result.success:
            successes += 1
            print(f"\n{result.summary()}")
        else:
            print(f"Error: {result.error}", file=sys.stderr)

    if len(valid_inputs) > 1:
        print(f"\n{'='*50}")
        print(f"Batch complete: {successes}/{len(valid_inputs)} files")

    sys.exit(0 if successes == len(valid_inputs) else 1)


if __name__ == "__main__":
    main()
