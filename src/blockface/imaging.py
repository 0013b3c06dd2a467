"""Image codec helpers: color type probing and grayscale normalization."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Optional

from blockface.errors import FrameIOError, InputFormatError

logger = logging.getLogger(__name__)

GRAYSCALE = "grayscale"
TRUECOLOR = "truecolor"
INDEXED = "indexed"

# Pillow modes of palette-encoded files; OpenCV expands these to BGR on decode.
_INDEXED_MODES = ("P", "PA")


def _require_cv2() -> None:
    try:
        import cv2  # noqa: F401
    except ModuleNotFoundError as exc:
        raise ModuleNotFoundError(
            "OpenCV (cv2) is required to read and write images. Install it first."
        ) from exc


def read_image(path: Path) -> Any:
    """Decode an image without color conversion (keeps bit depth and alpha)."""
    _require_cv2()
    import cv2  # type: ignore

    image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise FrameIOError(f"Failed to read image: {path}")
    return image


def color_type_of(image) -> str:
    """Classify a decoded array as grayscale, truecolor or `<n>-channel`."""
    if image.ndim == 2:
        return GRAYSCALE
    channels = int(image.shape[2])
    if channels == 1:
        return GRAYSCALE
    if channels in (3, 4):
        return TRUECOLOR
    return f"{channels}-channel"


def _header_mode(path: Path) -> Optional[str]:
    """Pillow mode of the stored encoding, or None if Pillow cannot identify the file."""
    from PIL import Image, UnidentifiedImageError  # type: ignore

    try:
        with Image.open(path) as im:
            return im.mode
    except UnidentifiedImageError:
        logger.debug("No header mode for %s; using decoded channels", path)
        return None


def _classify(path: Path, image) -> str:
    if _header_mode(path) in _INDEXED_MODES:
        return INDEXED
    return color_type_of(image)


def read_color_type(path: Path) -> str:
    """Color type of a stored image; palette-encoded files are `indexed`."""
    return _classify(path, read_image(path))


def check_color_type(path: Path) -> str:
    """Return the color type of `path`, raising InputFormatError unless supported."""
    color_type = read_color_type(path)
    if color_type not in (GRAYSCALE, TRUECOLOR):
        raise InputFormatError(path, color_type)
    return color_type


def write_image(path: Path, image) -> None:
    """Encode an image; the format follows the file extension."""
    import cv2  # type: ignore

    try:
        ok = cv2.imwrite(str(path), image)
    except cv2.error as exc:
        raise FrameIOError(f"Failed to write image {path}: {exc}") from exc
    if not ok:
        raise FrameIOError(f"Failed to write image: {path}")


def copy_to_grey(src: Path, dst: Path) -> str:
    """Copy `src` to `dst`, converting truecolor images to single-channel gray.

    Grayscale sources are copied byte for byte. Palette (indexed) files are
    rejected even though the decoder expands them to BGR. Resampling backends only use
    the first channel, so every output frame is normalized to grayscale,
    including frames that are not shifted.

    Returns:
        The color type of the source image.

    Raises:
        InputFormatError: If the image is neither grayscale nor truecolor.
        FrameIOError: If reading, converting or writing fails.
    """
    image = read_image(src)
    color_type = _classify(src, image)

    import cv2  # type: ignore

    if color_type == GRAYSCALE:
        try:
            shutil.copyfile(src, dst)
        except OSError as exc:
            raise FrameIOError(f"Cannot copy image {src} to file {dst}: {exc}") from exc
    elif color_type == TRUECOLOR:
        code = cv2.COLOR_BGRA2GRAY if image.shape[2] == 4 else cv2.COLOR_BGR2GRAY
        gray = cv2.cvtColor(image, code)
        write_image(dst, gray)
    else:
        raise InputFormatError(src, color_type)

    logger.debug("copy_to_grey %s -> %s (%s)", src, dst, color_type)
    return color_type
