"""Blockface frame-shift correction pipeline.

When a wax block is sliced with a microtome and the blockface photographed,
frames pick up positional artifacts: translations when the microtome tray is
not pushed all the way back, similarity shifts when the camera or mirrors move
slightly. Given the pairwise corrective transforms (frame i onto frame i-1),
this module runs three passes:

    cancel (sequential) -> accumulate (sequential) -> apply (parallel)

Corrected frames keep their file names but go to a different directory.
"""

from __future__ import annotations

import logging
import numbers
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from blockface.apply import FrameResult, FrameTask, apply_transforms
from blockface.correction import compute_frame_transforms
from blockface.errors import ConfigurationError, FrameApplicationError
from blockface.resample import OpenCVResampler, Resampler, make_resampler
from blockface.transforms import AffineTransform

logger = logging.getLogger(__name__)


@dataclass
class CorrectionReport:
    """Outcome of a run: accumulated transforms and per-frame results."""

    input_dir: Path
    output_dir: Path
    frames: List[str]
    non_propagating: List[int]
    accumulated: Tuple[AffineTransform, ...]
    results: List[FrameResult] = field(default_factory=list)
    atol: float = 1e-9

    @property
    def failures(self) -> List[FrameResult]:
        return [r for r in self.results if not r.success]

    @property
    def resampled_indices(self) -> List[int]:
        return [
            i for i, t in enumerate(self.accumulated) if not t.is_identity(atol=self.atol)
        ]

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable summary for debug dumps."""
        frames = []
        for i, (name, transform) in enumerate(zip(self.frames, self.accumulated)):
            frames.append(
                {
                    "index": i,
                    "name": name,
                    "identity": transform.is_identity(atol=self.atol),
                    "matrix": [list(row) for row in transform.rows],
                    "affine_parameters": transform.affine_parameters,
                }
            )
        return {
            "input_dir": str(self.input_dir),
            "output_dir": str(self.output_dir),
            "n_frames": len(self.frames),
            "non_propagating": list(self.non_propagating),
            "n_resampled": len(self.resampled_indices),
            "frames": frames,
            "results": [
                {
                    "index": r.index,
                    "name": r.name,
                    "success": r.success,
                    "resampled": r.resampled,
                    "color_type": r.color_type,
                    "error": r.error,
                    "error_type": r.error_type,
                    "duration_s": round(r.duration, 4),
                }
                for r in self.results
            ],
            "n_failed": len(self.failures),
        }


def check_directories(input_dir, output_dir) -> Tuple[Path, Path]:
    """Refuse to run when corrected frames would overwrite the source frames."""
    input_dir = Path(input_dir)
    output_dir = Path(output_dir)
    if input_dir.resolve() == output_dir.resolve():
        raise ConfigurationError(
            f"Input and output directory are the same, and files would be overwritten: {input_dir}"
        )
    return input_dir, output_dir


def ensure_output_dir(output_dir: Path) -> Path:
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(f"Cannot create output directory: {output_dir} ({exc})") from exc
    return output_dir


def correct_frame_shifts(
    input_dir,
    frames: Sequence[str],
    pairwise: Sequence[AffineTransform],
    non_propagating: Iterable[int],
    output_dir,
    resampler: Optional[Resampler] = None,
    max_workers: Optional[int] = None,
    atol: float = 1e-9,
    dry_run: bool = False,
) -> CorrectionReport:
    """Correct frame shifts of a blockface stack.

    Args:
        input_dir: Directory with the source frames.
        frames: Frame file names in acquisition order.
        pairwise: pairwise[i] registers frame i onto frame i-1; pairwise[0]
            is ignored (frame 0 is the reference).
        non_propagating: 0-based indices whose correction does not carry
            into later frames.
        output_dir: Destination directory; must differ from input_dir.
        resampler: Backend for non-identity frames (default: OpenCVResampler).
        max_workers: Worker pool size (default: CPU count).
        atol: Tolerance for identity tests.
        dry_run: Compute transforms only; no directory is created and no
            frame is touched.

    Returns:
        CorrectionReport with accumulated transforms and per-frame results.

    Raises:
        ConfigurationError: Same input/output directory, length mismatch,
            duplicate frame names, bad indices or an output directory that cannot be created.
        ConsistencyError: Non-propagating frame followed by a non-identity
            transform.
        FrameApplicationError: One or more frames failed; carries the report.
    """
    input_dir, output_dir = check_directories(input_dir, output_dir)
    frames = [str(f) for f in frames]
    pairwise = tuple(pairwise)
    if len(frames) != len(pairwise):
        raise ConfigurationError(
            f"Got {len(frames)} frames but {len(pairwise)} pairwise transforms."
        )
    duplicates = sorted(name for name, n in Counter(frames).items() if n > 1)
    if duplicates:
        raise ConfigurationError(f"Duplicate frame names: {duplicates}")
    non_propagating = list(non_propagating)
    for i in non_propagating:
        if isinstance(i, bool) or not isinstance(i, numbers.Integral):
            raise ConfigurationError(f"Non-propagating index must be an integer, got {i!r}")
    non_propagating = sorted(set(int(i) for i in non_propagating))

    accumulated = compute_frame_transforms(pairwise, non_propagating, atol=atol)
    report = CorrectionReport(
        input_dir=input_dir,
        output_dir=output_dir,
        frames=frames,
        non_propagating=non_propagating,
        accumulated=accumulated,
        atol=atol,
    )
    if dry_run:
        logger.info("Dry run: %s frames would be resampled.", len(report.resampled_indices))
        return report

    ensure_output_dir(output_dir)
    if resampler is None:
        resampler = OpenCVResampler()

    tasks = [
        FrameTask(
            index=i,
            name=name,
            src=input_dir / name,
            dst=output_dir / name,
            transform=transform,
        )
        for i, (name, transform) in enumerate(zip(frames, accumulated))
    ]
    report.results = apply_transforms(tasks, resampler, max_workers=max_workers, atol=atol)

    if report.failures:
        raise FrameApplicationError(report)
    logger.info("Corrected %s frames into %s", len(frames), output_dir)
    return report


def correct_stack(
    config,
    resampler: Optional[Resampler] = None,
    dry_run: bool = False,
    atol: float = 1e-9,
) -> CorrectionReport:
    """Run the pipeline for a StackConfig loaded from a manifest."""
    if resampler is None:
        try:
            resampler = make_resampler(config.resampler, **config.resampler_options)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid resampler configuration: {exc}") from exc
    return correct_frame_shifts(
        config.input_dir,
        config.frames,
        config.transforms,
        config.non_propagating,
        config.output_dir,
        resampler=resampler,
        max_workers=config.max_workers,
        atol=atol,
        dry_run=dry_run,
    )
