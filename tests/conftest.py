import shutil
import threading
from pathlib import Path

import cv2
import numpy as np
import pytest
from PIL import Image

from blockface.resample import Resampler


def write_gray(path: Path, shape=(12, 16), value=None) -> Path:
    """Write a uint8 single-channel test frame with a deterministic gradient."""
    h, w = shape
    if value is None:
        img = (np.arange(h * w, dtype=np.uint16).reshape(h, w) % 251).astype(np.uint8)
    else:
        img = np.full((h, w), value, dtype=np.uint8)
    path.parent.mkdir(parents=True, exist_ok=True)
    assert cv2.imwrite(str(path), img)
    return path


def write_color(path: Path, shape=(12, 16), alpha: bool = False) -> Path:
    h, w = shape
    img = np.zeros((h, w, 4 if alpha else 3), dtype=np.uint8)
    img[..., 0] = 30
    img[..., 1] = np.arange(w, dtype=np.uint8)[None, :] * 10
    img[..., 2] = 200
    if alpha:
        img[..., 3] = 255
    path.parent.mkdir(parents=True, exist_ok=True)
    assert cv2.imwrite(str(path), img)
    return path


def write_palette(path: Path, shape=(6, 8)) -> Path:
    """Write an indexed (palette) PNG; OpenCV decodes it as 3-channel BGR."""
    h, w = shape
    img = Image.new("P", (w, h))
    img.putpalette([0, 0, 0, 255, 0, 0, 0, 255, 0] + [0] * (3 * 253))
    img.putpixel((1, 1), 1)
    img.putpixel((2, 3), 2)
    path.parent.mkdir(parents=True, exist_ok=True)
    img.save(path)
    return path


class CopyResampler(Resampler):
    """Resampling stand-in: copies the source to a fresh temporary file."""

    def __init__(self, tmp_dir=None):
        super().__init__(tmp_dir=tmp_dir)
        self.calls = []
        self.outputs = []
        self._lock = threading.Lock()

    def resample(self, transform, src_path):
        tmp_path = self._make_temp(Path(src_path).suffix)
        shutil.copyfile(src_path, tmp_path)
        with self._lock:
            self.calls.append((Path(src_path).name, transform))
            self.outputs.append(tmp_path)
        return tmp_path


@pytest.fixture
def copy_resampler(tmp_path):
    tmp_dir = tmp_path / "resample_tmp"
    tmp_dir.mkdir()
    return CopyResampler(tmp_dir=tmp_dir)
