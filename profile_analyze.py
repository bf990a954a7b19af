#!/usr/bin/env python3
"""Profile the palette pipeline stage by stage to find performance bottlenecks."""

import cProfile
import pstats
import io
import sys
import time
from pathlib import Path

import numpy as np

# Import the pipeline stages
from extract_palette import PaletteConfig, load_pixel_buffer, validate_pixel_buffer
from median_cut import extract_palette_median_cut
from refine_palette import RawPixels, SuperpixelFeatures, refine_palette
from slic import apply_slic

def profile_image(image_path: str, config: PaletteConfig, verbose: bool = True):
    """Time each pipeline stage for a single image."""

    if verbose:
        print(f"\n{'='*60}")
        print(f"Profiling: {Path(image_path).name}")
        print(f"{'='*60}")

    timings = {}

    # Stage 1: Load and validate
    start = time.perf_counter()
    buffer, width, height = load_pixel_buffer(image_path)
    pixels = validate_pixel_buffer(buffer, width, height)
    timings['load'] = time.perf_counter() - start

    # Stage 2: Median cut
    start = time.perf_counter()
    seeds = extract_palette_median_cut(pixels, config.dominant_colors)
    timings['median_cut'] = time.perf_counter() - start

    if verbose:
        print(f"  Image: {width}x{height} ({len(pixels):,} pixels)")
        print(f"  Seeds: {len(seeds)}")

    # Stage 3: SLIC
    start = time.perf_counter()
    slic_result = apply_slic(
        pixels, width, height,
        superpixel_count=config.superpixel_count,
        compactness=config.superpixel_compactness,
        color_space=config.superpixel_color_space,
        max_pixels=config.max_pixels,
    )
    timings['slic'] = time.perf_counter() - start

    if verbose:
        print(f"  Superpixels: {len(slic_result.features)} "
              f"({slic_result.processed_width}x{slic_result.processed_height} processed)")

    # Stage 4: Refinement, both sources
    start = time.perf_counter()
    raw_palette = refine_palette(RawPixels(pixels), seeds, palette_size=config.palette_size,
                                 min_colors=config.min_colors, use_delta_e=config.use_delta_e)
    timings['refine_raw'] = time.perf_counter() - start

    start = time.perf_counter()
    refine_palette(SuperpixelFeatures.from_slic(slic_result), seeds, palette_size=config.palette_size,
                   min_colors=config.min_colors, use_delta_e=config.use_delta_e)
    timings['refine_superpixels'] = time.perf_counter() - start

    total = sum(timings.values())
    timings['total'] = total

    if verbose:
        print(f"  Palette colors: {len(raw_palette)}")
        print(f"\nStage timings:")
        for stage, t in timings.items():
            pct = (t / total * 100) if stage != 'total' else 100
            print(f"  {stage:20s}: {t:6.3f}s ({pct:5.1f}%)")

    return timings, slic_result

def detailed_profile(image_path: str, config: PaletteConfig):
    """Run detailed cProfile on apply_slic (the main compute stage)."""

    print(f"\n{'='*60}")
    print(f"Detailed profile of apply_slic()")
    print(f"{'='*60}")

    # Load first (outside profiling)
    buffer, width, height = load_pixel_buffer(image_path)
    pixels = np.frombuffer(buffer, dtype=np.uint8)

    profiler = cProfile.Profile()
    profiler.enable()
    result = apply_slic(pixels, width, height, config.superpixel_count,
                        config.superpixel_compactness, max_pixels=config.max_pixels)
    profiler.disable()

    # Format output
    stream = io.StringIO()
    stats = pstats.Stats(profiler, stream=stream)
    stats.sort_stats('cumulative')
    stats.print_stats(30)  # Top 30 functions

    print(stream.getvalue())

    return result

def main():
    images_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else Path(__file__).parent / "source_images"
    images = sorted(images_dir.glob("*.jp*g")) + sorted(images_dir.glob("*.png"))

    if not images:
        print(f"No images found in {images_dir}/")
        sys.exit(1)

    print(f"Found {len(images)} test images")
    config = PaletteConfig()

    all_timings = []
    for img in images:
        timings, slic_result = profile_image(str(img), config)
        all_timings.append((img.name, timings, len(slic_result.features)))

    # Summary
    print(f"\n{'='*60}")
    print("SUMMARY")
    print(f"{'='*60}")
    print(f"{'Image':<35} {'SLIC':>8} {'Segments':>9} {'Total':>8}")
    print("-" * 64)
    for name, timings, segments in all_timings:
        print(f"{name:<35} {timings['slic']:>7.3f}s {segments:>9,} {timings['total']:>7.3f}s")

    # Detailed profile on first image
    if images:
        detailed_profile(str(images[0]), config)

if __name__ == "__main__":
    main()
