#!/usr/bin/env python3
"""Inspect a stack manifest without writing any frame.

Checks that the frames are readable, reports their color type and lists
which frames would be resampled after cancellation and accumulation.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys


# --- CLI helpers ---

def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the inspection script."""
    parser = argparse.ArgumentParser(description="Inspect a blockface stack manifest.")
    parser.add_argument(
        "--manifest",
        default="data/manifests/stack.yaml",
        help="Path to stack manifest (default: data/manifests/stack.yaml)",
    )
    parser.add_argument(
        "--frame_index",
        type=int,
        default=0,
        help="Frame whose color type is reported",
    )
    return parser


# --- Entry point ---

def main() -> int:
    """Print a summary of the stack; exceptions bubble up as errors."""
    args = _build_parser().parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root / "src"))

    from blockface.correction import compute_frame_transforms  # noqa: E402
    from blockface.imaging import read_color_type, read_image  # noqa: E402
    from blockface.io import load_stack_config  # noqa: E402

    manifest_path = Path(args.manifest)
    if not manifest_path.is_absolute():
        manifest_path = repo_root / manifest_path
    config = load_stack_config(manifest_path)

    accumulated = compute_frame_transforms(config.transforms, config.non_propagating)
    moved = [i for i, t in enumerate(accumulated) if not t.is_identity()]

    sample = config.input_dir / config.frames[args.frame_index]
    image = read_image(sample)

    print(f"input_dir={config.input_dir}")
    print(f"output_dir={config.output_dir}")
    print(f"n_frames={len(config.frames)} first={config.frames[0]} last={config.frames[-1]}")
    print(f"frame={sample.name} color_type={read_color_type(sample)} shape={image.shape} dtype={image.dtype}")
    print(f"non_propagating={config.non_propagating}")
    print(f"resampler={config.resampler} max_workers={config.max_workers}")
    print(f"n_resampled={len(moved)} resampled={moved}")
    for i in moved:
        (a11, a12, bx), (a21, a22, by) = accumulated[i].rows
        print(f"  [{i}] {config.frames[i]} A=[[{a11:.6f} {a12:.6f}] [{a21:.6f} {a22:.6f}]] b=[{bx:.3f} {by:.3f}]")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
