"""Frame applicator: resample (or copy) every frame into the reference space.

Each frame task only reads its own source file and its finalized accumulated
transform, so tasks run independently on a worker pool. Failures are
collected per frame instead of stopping sibling tasks.
"""

from __future__ import annotations

import logging
import os
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from blockface.imaging import check_color_type, copy_to_grey
from blockface.resample import Resampler
from blockface.transforms import AffineTransform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameTask:
    """One frame to correct: source, destination and accumulated transform."""

    index: int
    name: str
    src: Path
    dst: Path
    transform: AffineTransform


@dataclass
class FrameResult:
    """Outcome of one frame task."""

    index: int
    name: str
    success: bool
    resampled: bool = False
    color_type: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    traceback: Optional[str] = None
    duration: float = 0.0

    def __str__(self) -> str:
        status = "OK" if self.success else f"FAILED ({self.error_type}: {self.error})"
        return f"FrameResult({self.index}:{self.name}, {status}, {self.duration:.2f}s)"


def apply_frame(task: FrameTask, resampler: Resampler, atol: float = 1e-9) -> FrameResult:
    """Correct a single frame; raises on failure.

    Identity frames are copied with grayscale normalization. Other frames are
    resampled to a temporary file that is converted into the destination and
    then deleted, also when the conversion fails.
    """
    start = time.perf_counter()
    if task.transform.is_identity(atol=atol):
        color_type = copy_to_grey(task.src, task.dst)
        resampled = False
    else:
        # The resampled copy is always re-encoded, so check the source first.
        color_type = check_color_type(task.src)
        tmp_path = resampler.resample(task.transform, task.src)
        try:
            copy_to_grey(tmp_path, task.dst)
        finally:
            tmp_path.unlink(missing_ok=True)
        resampled = True
    return FrameResult(
        index=task.index,
        name=task.name,
        success=True,
        resampled=resampled,
        color_type=color_type,
        duration=time.perf_counter() - start,
    )


def _run_task(task: FrameTask, resampler: Resampler, atol: float) -> FrameResult:
    """Run one task and turn any exception into a failed FrameResult."""
    start = time.perf_counter()
    try:
        return apply_frame(task, resampler, atol=atol)
    except Exception as exc:
        return FrameResult(
            index=task.index,
            name=task.name,
            success=False,
            resampled=not task.transform.is_identity(atol=atol),
            error=str(exc),
            error_type=type(exc).__name__,
            traceback=traceback.format_exc(),
            duration=time.perf_counter() - start,
        )


def apply_transforms(
    tasks: Sequence[FrameTask],
    resampler: Resampler,
    max_workers: Optional[int] = None,
    atol: float = 1e-9,
) -> List[FrameResult]:
    """Run all frame tasks on a thread pool and collect every result.

    Args:
        tasks: Frame tasks; order does not matter.
        resampler: Backend for non-identity frames (shared, must be stateless).
        max_workers: Pool size; defaults to the number of CPUs.
        atol: Tolerance of the identity test.

    Returns:
        One FrameResult per task, sorted by frame index.
    """
    if not tasks:
        logger.warning("No frames to apply.")
        return []

    if max_workers is None:
        max_workers = os.cpu_count() or 1
    max_workers = max(1, min(int(max_workers), len(tasks)))
    logger.info("Applying %s frames with %s workers", len(tasks), max_workers)

    results: List[FrameResult] = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_task = {
            executor.submit(_run_task, task, resampler, atol): task for task in tasks
        }
        for completed, future in enumerate(as_completed(future_to_task), start=1):
            result = future.result()
            results.append(result)
            if result.success:
                logger.debug(
                    "[%s/%s] frame %s %s (%s) %.2fs",
                    completed,
                    len(tasks),
                    result.index,
                    result.name,
                    "resampled" if result.resampled else "copied",
                    result.duration,
                )
            else:
                logger.error(
                    "[%s/%s] frame %s %s FAILED: %s",
                    completed,
                    len(tasks),
                    result.index,
                    result.name,
                    result.error,
                )

    results.sort(key=lambda r: r.index)
    n_failed = sum(1 for r in results if not r.success)
    logger.info(
        "Applied %s frames: %s resampled, %s copied, %s failed",
        len(results),
        sum(1 for r in results if r.success and r.resampled),
        sum(1 for r in results if r.success and not r.resampled),
        n_failed,
    )
    return results
