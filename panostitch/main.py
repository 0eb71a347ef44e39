#!/usr/bin/env python3
"""
panostitch - multi-image panorama stitching
Command-line entry point
"""

import sys
import argparse
import logging
from pathlib import Path

from tqdm import tqdm

from panostitch.core.config import BLEND_METHODS, REFINEMENT_METHODS, WARP_MODELS, StitchConfig
from panostitch.core.stitcher import PanoramaStitcher
from panostitch.core.types import StitchStatus
from panostitch.utils.image_io import load_images, save_panorama
from panostitch.utils.logger import get_log_file_path, setup_logger

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="panostitch - multi-image panorama stitching"
    )
    parser.add_argument(
        "--input",
        type=str,
        required=True,
        help="Input directory containing images (stitched in file name order)"
    )
    parser.add_argument(
        "--output",
        type=str,
        required=True,
        help="Output file path for stitched panorama (.png, .jpg, .tif)"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="YAML configuration file"
    )
    parser.add_argument(
        "--refine",
        action="store_true",
        help="Enable neural refinement of uncovered regions"
    )
    parser.add_argument(
        "--model",
        type=str,
        help="ONNX inpainting model used by --refine"
    )
    parser.add_argument(
        "--refine-method",
        type=str,
        choices=REFINEMENT_METHODS,
        help="Refinement method (default: onnx)"
    )
    parser.add_argument(
        "--blend",
        type=str,
        choices=BLEND_METHODS,
        help="Blending algorithm (default: feather)"
    )
    parser.add_argument(
        "--warp",
        type=str,
        choices=WARP_MODELS,
        help="Warp model: global homographies or apap local meshes (default: global)"
    )
    parser.add_argument(
        "--seed",
        type=int,
        help="Random seed for robust estimation"
    )
    parser.add_argument(
        "--quality",
        type=str,
        default="high",
        choices=["ultra_high", "high", "medium", "low"],
        help="Output quality preset (default: high)"
    )
    parser.add_argument(
        "--dpi",
        type=int,
        default=300,
        help="Output DPI (default: 300)"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log debug details"
    )
    return parser


def load_config(args) -> StitchConfig:
    config = StitchConfig.from_yaml(args.config) if args.config else StitchConfig()
    overrides = {}
    if args.refine:
        overrides['enable_neural_refinement'] = True
    if args.model:
        overrides['model_path'] = args.model
    if args.refine_method:
        overrides['refinement_method'] = args.refine_method
    if args.blend:
        overrides['blend_method'] = args.blend
    if args.warp:
        overrides['warp_model'] = args.warp
    if args.seed is not None:
        overrides['seed'] = args.seed
    return config.replace(**overrides) if overrides else config


def print_report(result):
    report = result.report
    print(f"Status: {result.status.value}")
    print(f"Images used: {len(report.used_images)}/{report.input_count}")
    for index, reason in sorted(report.excluded_images.items()):
        print(f"  excluded image {index}: {reason}")
    if len(result.panoramas) > 1:
        print(f"Additional panoramas: {len(result.panoramas) - 1}")
    print(f"Bundle adjustment: {'converged' if report.bundle_converged else 'not applied'}")
    print(f"Refined: {'yes' if report.refined else 'no'}")
    for diagnostic in report.diagnostics:
        print(f"  [{diagnostic.kind}] {diagnostic.message}")


def main(argv=None):
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    # The package logger carries the handlers for every module
    setup_logger("panostitch", logging.DEBUG if args.verbose else logging.INFO)
    logger.info(f"Log file: {get_log_file_path()}")

    try:
        config = load_config(args)
    except (OSError, ValueError) as e:
        parser.error(f"invalid configuration: {e}")

    input_path = Path(args.input)
    if not input_path.is_dir():
        logger.error(f"Input path does not exist: {input_path}")
        return 2

    paths, buffers = load_images(input_path)
    if not buffers:
        logger.error(f"No images found in {input_path}")
        return 1
    for index, path in enumerate(paths):
        logger.info(f"Image {index}: {path.name}")

    with tqdm(total=100, desc="Stitching", unit="%") as bar:
        def on_progress(percentage: int, message: str):
            bar.set_postfix_str(message[:40])
            bar.update(max(percentage - bar.n, 0))

        stitcher = PanoramaStitcher(config, progress_callback=on_progress)
        result = stitcher.stitch(buffers)

    print_report(result)
    if result.status in (StitchStatus.NO_PANORAMA, StitchStatus.CANCELLED):
        logger.error("No panorama produced")
        return 1

    save_panorama(result.composite.pixels, args.output, result.composite.color_format,
                  quality=args.quality, dpi=args.dpi)
    logger.info(f"Panorama saved to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
