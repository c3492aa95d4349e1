#!/usr/bin/env python
"""
Command-line interface for the Document Rectification Pipeline.

Usage:
    docrectify --input <image_or_folder> --output <output_dir> [options]

Examples:
    # Rectify a single photo
    docrectify --input page.jpg --output ./output

    # Rectify a folder with 4 workers, keeping colors
    docrectify --input ./photos --output ./output --workers 4 --no-scan-filter

    # Debug mode with crop box visualization
    docrectify --input ./photos --output ./output --debug
"""

import sys
import argparse
import logging
import threading
import time
from pathlib import Path

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("docrectify")


def setup_argparser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description="Document Rectification Pipeline - Crop, straighten and clean document photos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Rectify every image in a folder:
    docrectify --input ./photos --output ./output

  Use the dark-pixel density analyzer:
    docrectify --input ./photos --output ./output --analyzer density

  Keep color and shading:
    docrectify --input page.jpg --output ./output --no-shadow-removal --no-scan-filter
        """
    )

    # Required arguments
    parser.add_argument(
        "--input", "-i",
        required=True,
        help="Input image file or folder of images"
    )

    parser.add_argument(
        "--output", "-o",
        required=True,
        help="Output directory for generated files"
    )

    # Optional arguments
    parser.add_argument(
        "--analyzer",
        choices=["edge", "density"],
        default=None,
        help="Content analyzer (default: edge)"
    )

    parser.add_argument(
        "--no-shadow-removal",
        action="store_true",
        help="Disable shadow removal"
    )

    parser.add_argument(
        "--no-scan-filter",
        action="store_true",
        help="Disable the monochrome scan filter"
    )

    parser.add_argument(
        "--no-trim",
        action="store_true",
        help="Keep white margins after rectification"
    )

    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=None,
        help="Number of files processed concurrently (default: 1)"
    )

    parser.add_argument(
        "--quality",
        type=int,
        default=None,
        help="JPEG quality for output images (default: 90)"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (outputs source images with the crop box drawn)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output"
    )

    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress non-error output"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    return parser


def build_config(args):
    """Apply command-line overrides on top of the environment configuration."""
    from docrectify.config import get_config

    config = get_config()
    if args.analyzer:
        config.analysis.method = args.analyzer
    if args.no_shadow_removal:
        config.filters.enable_shadow_removal = False
    if args.no_scan_filter:
        config.filters.enable_scan_filter = False
    if args.no_trim:
        config.filters.enable_border_trim = False
    if args.workers is not None:
        config.max_workers = max(1, args.workers)
    if args.quality is not None:
        config.export.jpeg_quality = min(100, max(1, args.quality))
    if args.debug:
        config.debug_mode = True
    return config


def save_debug_images(problems, output_dir: Path):
    """Write each source image with its detected crop drawn on it."""
    from docrectify.utils.io import decode_image, save_image
    from docrectify.utils.images import draw_debug_image

    for problem in problems:
        if problem.crop is None:
            continue
        image = decode_image(problem.original)
        crop = problem.crop
        debug = draw_debug_image(
            image,
            [(crop.x, crop.y, crop.width, crop.height)],
            [f"{problem.rotation:.0f} deg"]
        )
        save_image(debug, output_dir / "debug" / f"{Path(problem.source_name).stem}_crop.png")


def run_pipeline(args) -> int:
    """Run the document rectification pipeline."""
    from docrectify.utils.io import detect_input_type, list_image_files, save_bytes, save_json, ensure_dir
    from docrectify.utils.assembler import BatchProcessor

    start_time = time.time()
    config = build_config(args)

    output_dir = ensure_dir(args.output)

    input_path = Path(args.input)
    input_type = detect_input_type(input_path)
    logger.info(f"Input type detected: {input_type}")

    if input_type == "image":
        files = [input_path]
    elif input_type == "image_folder":
        files = list_image_files(input_path)
    else:
        logger.error(f"Unsupported input type: {input_type}")
        return 1

    if not files:
        logger.error("No images to process")
        return 1

    def report(current: int, total: int):
        if not args.quiet:
            logger.info(f"Progress: {current}/{total}")

    processor = BatchProcessor(config)
    result = processor.process_files(files, progress_callback=report, cancel_event=threading.Event())

    # Save images and manifest
    used_names = set()
    entries = []
    for problem in result.problems:
        stem = Path(problem.source_name).stem or problem.problem_id
        name = f"{stem}.jpg"
        if name in used_names:
            name = f"{stem}_{problem.problem_id[:8]}.jpg"
        used_names.add(name)

        save_bytes(problem.processed, output_dir / name)
        entry = problem.to_dict()
        entry["output"] = name
        entries.append(entry)

    manifest = result.to_dict()
    manifest["problems"] = entries
    manifest_path = save_json(manifest, output_dir / config.export.manifest_name)
    logger.info(f"Saved manifest: {manifest_path}")

    if config.debug_mode:
        save_debug_images(result.problems, output_dir)

    elapsed = time.time() - start_time

    if not args.quiet:
        print("\n" + "="*60)
        print("DOCUMENT RECTIFICATION COMPLETE")
        print("="*60)
        print(f"Source: {input_path}")
        print(f"Output: {output_dir}")
        print(f"Files processed: {len(result.problems)}/{result.total}")
        print(f"Failures: {len(result.errors)}")
        print(f"Processing time: {elapsed:.2f}s")
        print("="*60)

    return 0 if not result.errors else 2


def main():
    """Main entry point."""
    parser = setup_argparser()
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.ERROR)

    try:
        exit_code = run_pipeline(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args.debug:
            raise
        sys.exit(1)


if __name__ == "__main__":
    main()
