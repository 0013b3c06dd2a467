#!/usr/bin/env python3
"""Correct frame shifts of a blockface stack described by a manifest."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
import time
from typing import Dict, Optional


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Blockface frame-shift correction.")
    parser.add_argument(
        "--manifest",
        default="data/manifests/stack.yaml",
        help="Path to stack manifest",
    )
    parser.add_argument("--input_dir", default=None, help="Override stack.input_dir")
    parser.add_argument("--output_dir", default=None, help="Override stack.output_dir")
    parser.add_argument(
        "--non_propagating",
        type=int,
        nargs="*",
        default=None,
        help="Override stack.non_propagating (0-based frame indices)",
    )
    parser.add_argument(
        "--resampler",
        default=None,
        choices=["opencv", "transformix"],
        help="Override stack.resampler",
    )
    parser.add_argument(
        "--transformix",
        default=None,
        help="Path to the transformix executable (implies --resampler transformix)",
    )
    parser.add_argument("--max_workers", type=int, default=None, help="Worker pool size")
    parser.add_argument(
        "--atol",
        type=float,
        default=1e-9,
        help="Tolerance for identity transforms",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Compute accumulated transforms only; do not write frames",
    )
    parser.add_argument(
        "--run_id",
        default=None,
        help="Optional run id (default: timestamp_manifest_stem)",
    )
    return parser


def _setup_logging(log_path: Optional[Path]) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=logging.INFO,
        format="%(levelname)s %(message)s",
        handlers=handlers,
    )


def _write_debug(path: Path, debug: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(debug, f, ensure_ascii=False, indent=2)


def main() -> int:
    args = _build_parser().parse_args()

    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root / "src"))

    from blockface.errors import FrameApplicationError  # noqa: E402
    from blockface.io import load_stack_config  # noqa: E402
    from blockface.pipeline import correct_stack  # noqa: E402
    from blockface.resample import TransformixResampler  # noqa: E402

    manifest_path = Path(args.manifest)
    if not manifest_path.is_absolute():
        manifest_path = repo_root / manifest_path

    run_id = args.run_id
    if run_id is None:
        ts = time.strftime("%Y%m%d_%H%M%S")
        run_id = f"{ts}_{manifest_path.stem}"

    output_dir = repo_root / "outputs" / "runs" / run_id
    _setup_logging(output_dir / "logs.txt")

    debug = {
        "manifest": str(manifest_path),
        "input_dir": None,
        "output_dir": None,
        "n_frames": None,
        "non_propagating": None,
        "resampler": None,
        "dry_run": args.dry_run,
        "report": None,
        "runtime_ms": None,
        "failure_stage": None,
        "message": None,
    }
    start_time = time.time()
    debug_path = output_dir / "debug.json"

    try:
        config = load_stack_config(manifest_path)
        if args.input_dir is not None:
            config.input_dir = Path(args.input_dir)
        if args.output_dir is not None:
            config.output_dir = Path(args.output_dir)
        if args.non_propagating is not None:
            config.non_propagating = list(args.non_propagating)
        if args.resampler is not None and args.resampler != config.resampler:
            # Manifest options belong to the manifest's backend.
            config.resampler = args.resampler
            config.resampler_options = {}
        if args.max_workers is not None:
            config.max_workers = args.max_workers
        debug["input_dir"] = str(config.input_dir)
        debug["output_dir"] = str(config.output_dir)
        debug["n_frames"] = len(config.frames)
        debug["non_propagating"] = config.non_propagating
        debug["resampler"] = config.resampler
    except Exception as exc:
        debug["failure_stage"] = "load_manifest"
        debug["message"] = str(exc)
        debug["runtime_ms"] = int((time.time() - start_time) * 1000)
        _write_debug(debug_path, debug)
        logging.error("Failed to load manifest: %s", exc)
        return 1

    resampler = None
    if args.transformix is not None:
        resampler = TransformixResampler(executable=args.transformix)
        debug["resampler"] = "transformix"

    try:
        report = correct_stack(
            config, resampler=resampler, dry_run=args.dry_run, atol=args.atol
        )
    except FrameApplicationError as exc:
        debug["failure_stage"] = "apply"
        debug["message"] = str(exc)
        debug["report"] = exc.report.to_dict()
        debug["runtime_ms"] = int((time.time() - start_time) * 1000)
        _write_debug(debug_path, debug)
        for failure in exc.report.failures:
            logging.error("Frame %s (%s) failed: %s", failure.index, failure.name, failure.error)
        return 1
    except Exception as exc:
        debug["failure_stage"] = "transforms"
        debug["message"] = str(exc)
        debug["runtime_ms"] = int((time.time() - start_time) * 1000)
        _write_debug(debug_path, debug)
        logging.error("Frame-shift correction failed: %s", exc)
        return 1

    debug["report"] = report.to_dict()
    debug["runtime_ms"] = int((time.time() - start_time) * 1000)
    _write_debug(debug_path, debug)
    logging.info("Run completed: %s (debug: %s)", config.output_dir, debug_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
