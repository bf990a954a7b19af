#!/usr/bin/env python3
"""Batch extract palettes for every image in a directory."""

import argparse
import sys
import time
from pathlib import Path

from extract_palette import add_config_arguments, config_from_args, extract_palette_from_file, format_palette


def find_images(directory: Path) -> list[Path]:
    """Find all image files in directory."""
    extensions = {'.jpg', '.jpeg', '.png', '.webp'}
    images = set()
    for ext in extensions:
        images.update(directory.glob(f'*{ext}'))
        images.update(directory.glob(f'*{ext.upper()}'))
    return sorted(images)


def main():
    parser = argparse.ArgumentParser(
        description='Batch extract color palettes from a directory of images.'
    )
    parser.add_argument(
        '--input', '-i',
        required=True,
        help='Directory containing images to analyze'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Print every palette color, not just the summary line'
    )
    add_config_arguments(parser)

    args = parser.parse_args()
    input_dir = Path(args.input)
    config = config_from_args(args)

    # Validate input directory
    if not input_dir.is_dir():
        print(f"Error: Input directory not found: {input_dir}", file=sys.stderr)
        sys.exit(2)

    images = find_images(input_dir)
    if not images:
        print(f"No images found in {input_dir}", file=sys.stderr)
        sys.exit(2)

    total = len(images)
    succeeded = 0
    failed = []

    batch_start = time.perf_counter()

    for i, image_path in enumerate(images, 1):
        try:
            img_start = time.perf_counter()
            result = extract_palette_from_file(str(image_path), config)
            img_elapsed = time.perf_counter() - img_start

            if not result.ok:
                raise ValueError(result.diagnostic)

            backgrounds = sum(c.is_background for c in result.colors)
            hidden = sum(c.is_hidden for c in result.colors)
            print(f"[{i}/{total}] {image_path.name} → {len(result.colors)} colors, "
                  f"{backgrounds} background, {hidden} hidden ({img_elapsed:.2f}s)")
            if args.verbose:
                print(format_palette(result))
            succeeded += 1

        except (OSError, ValueError) as e:
            error_msg = f"{type(e).__name__}: {e}"
            print(f"[{i}/{total}] {image_path.name} → ERROR: {error_msg}", file=sys.stderr)
            failed.append((image_path.name, error_msg))

    batch_elapsed = time.perf_counter() - batch_start

    # Summary
    print()
    print(f"Completed: {succeeded}/{total} succeeded in {batch_elapsed:.2f}s")
    if succeeded > 0:
        print(f"Average: {batch_elapsed / succeeded:.2f}s per image")
    if failed:
        print(f"Failed ({len(failed)}):")
        for name, error in failed:
            print(f"  - {name}: {error}")
        sys.exit(1)


if __name__ == '__main__':
    main()
