"""Error taxonomy for blockface frame-shift correction.

Configuration and consistency errors are fatal and raised before any frame is
processed. Per-frame format/IO errors are collected during the apply phase and
surfaced together through `FrameApplicationError`.
"""

from __future__ import annotations

from typing import Optional


class ConfigurationError(ValueError):
    """Invalid run configuration (e.g. input and output directory are the same)."""


class ConsistencyError(ValueError):
    """Non-propagating frame metadata contradicts the pairwise transforms."""

    def __init__(self, index: int, next_index: int) -> None:
        self.index = index
        self.next_index = next_index
        super().__init__(
            f"Frame {index} is declared non-propagating, but the transform of "
            f"frame {next_index} is not the identity."
        )


class InputFormatError(ValueError):
    """Source image has a color type other than grayscale or truecolor."""

    def __init__(self, path, color_type: str) -> None:
        self.path = path
        self.color_type = color_type
        super().__init__(
            f"Image is neither truecolor nor grayscale ({color_type}): {path}"
        )


class FrameIOError(OSError):
    """Reading, writing, copying or deleting a frame file failed."""


class ResampleError(RuntimeError):
    """The affine resampling backend failed to produce an output image."""


class FrameApplicationError(RuntimeError):
    """One or more frames failed during the apply phase.

    `report` holds the full `CorrectionReport`, including the successful
    frames, so callers can inspect every failure at once.
    """

    def __init__(self, report, message: Optional[str] = None) -> None:
        self.report = report
        failures = report.failures
        if message is None:
            names = ", ".join(f"{r.index}:{r.name}" for r in failures[:10])
            more = "" if len(failures) <= 10 else f" (+{len(failures) - 10} more)"
            message = f"{len(failures)} frame(s) failed: {names}{more}"
        super().__init__(message)
