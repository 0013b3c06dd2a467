"""Affine resampling backends.

A backend takes an accumulated transform (output -> input coordinates) and a
source image and writes the resampled frame to a NEW temporary file, unique
per call so concurrent frame tasks never collide. The caller owns that file
and must delete it.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from blockface.errors import ResampleError
from blockface.imaging import read_image, write_image
from blockface.io import write_elastix_parameters
from blockface.transforms import AffineTransform

logger = logging.getLogger(__name__)

_INTERPOLATIONS = ("nearest", "linear", "cubic")


class Resampler:
    """Abstract resampling backend.

    Contract:
    - resample(transform, src_path) returns the path of a new temporary image
      with the same size and file extension as the source, or raises.
    """

    def __init__(self, tmp_dir: Optional[Path] = None) -> None:
        self.tmp_dir = Path(tmp_dir) if tmp_dir is not None else None

    def resample(self, transform: AffineTransform, src_path: Path) -> Path:
        raise NotImplementedError

    def _make_temp(self, suffix: str) -> Path:
        fd, name = tempfile.mkstemp(
            prefix="blockface-", suffix=suffix or ".png", dir=self.tmp_dir
        )
        os.close(fd)
        return Path(name)


class OpenCVResampler(Resampler):
    """In-process resampling with `cv2.warpAffine`."""

    def __init__(
        self,
        interpolation: str = "linear",
        border_value: float = 0.0,
        tmp_dir: Optional[Path] = None,
    ) -> None:
        super().__init__(tmp_dir=tmp_dir)
        if interpolation not in _INTERPOLATIONS:
            raise ValueError(f"Unsupported interpolation: {interpolation}")
        self.interpolation = interpolation
        self.border_value = float(border_value)

    def resample(self, transform: AffineTransform, src_path: Path) -> Path:
        import cv2  # type: ignore

        src_path = Path(src_path)
        image = read_image(src_path)
        height, width = image.shape[:2]
        flags = {
            "nearest": cv2.INTER_NEAREST,
            "linear": cv2.INTER_LINEAR,
            "cubic": cv2.INTER_CUBIC,
        }[self.interpolation]

        # The transform maps output pixels to source pixels, hence the inverse map flag.
        warped = cv2.warpAffine(
            image,
            transform.matrix2x3,
            (width, height),
            flags=flags | cv2.WARP_INVERSE_MAP,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=self.border_value,
        )

        tmp_path = self._make_temp(src_path.suffix)
        try:
            write_image(tmp_path, warped)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug("warpAffine %s -> %s", src_path.name, tmp_path)
        return tmp_path


class TransformixResampler(Resampler):
    """Resampling through the elastix `transformix` executable."""

    def __init__(
        self,
        executable: str = "transformix",
        interpolation_order: int = 1,
        default_pixel_value: float = 0.0,
        timeout: Optional[float] = None,
        tmp_dir: Optional[Path] = None,
    ) -> None:
        super().__init__(tmp_dir=tmp_dir)
        self.executable = executable
        self.interpolation_order = int(interpolation_order)
        self.default_pixel_value = float(default_pixel_value)
        self.timeout = timeout

    def resample(self, transform: AffineTransform, src_path: Path) -> Path:
        src_path = Path(src_path)
        exe = shutil.which(self.executable)
        if exe is None:
            raise ResampleError(f"transformix executable not found: {self.executable}")

        image = read_image(src_path)
        height, width = image.shape[:2]
        result_format = src_path.suffix.lstrip(".").lower() or "png"

        work_dir = Path(tempfile.mkdtemp(prefix="blockface-transformix-", dir=self.tmp_dir))
        try:
            tp_path = write_elastix_parameters(
                work_dir / "TransformParameters.txt",
                transform,
                size=(width, height),
                result_format=result_format,
                pixel_type=_elastix_pixel_type(image.dtype),
                interpolation_order=self.interpolation_order,
                default_pixel_value=self.default_pixel_value,
            )
            cmd = [exe, "-in", str(src_path), "-out", str(work_dir), "-tp", str(tp_path)]
            try:
                proc = subprocess.run(
                    cmd, capture_output=True, text=True, timeout=self.timeout
                )
            except (OSError, subprocess.TimeoutExpired) as exc:
                raise ResampleError(f"transformix failed for {src_path}: {exc}") from exc
            if proc.returncode != 0:
                tail = (proc.stderr or proc.stdout or "").strip().splitlines()[-5:]
                raise ResampleError(
                    f"transformix exited with {proc.returncode} for {src_path}: "
                    + " | ".join(tail)
                )

            result = work_dir / f"result.{result_format}"
            if not result.exists():
                raise ResampleError(f"transformix produced no result image for {src_path}")
            tmp_path = self._make_temp(src_path.suffix)
            shutil.move(str(result), str(tmp_path))
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.debug("transformix %s -> %s", src_path.name, tmp_path)
        return tmp_path


def _elastix_pixel_type(dtype) -> str:
    import numpy as np  # type: ignore

    mapping = {
        np.dtype("uint8"): "unsigned char",
        np.dtype("uint16"): "unsigned short",
        np.dtype("int16"): "short",
        np.dtype("float32"): "float",
    }
    return mapping.get(np.dtype(dtype), "float")


def make_resampler(name: str = "opencv", **options) -> Resampler:
    """Build a resampling backend by name ("opencv" or "transformix")."""
    key = (name or "opencv").lower()
    if key == "opencv":
        return OpenCVResampler(**options)
    if key == "transformix":
        return TransformixResampler(**options)
    raise ValueError(f"Unsupported resampler: {name}")
