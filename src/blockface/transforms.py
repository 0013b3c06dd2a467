"""2D affine/similarity transform algebra for frame-shift correction.

Convention (elastix/transformix): a transform maps *output* (fixed)
coordinates to *input* (moving) coordinates. A pairwise transform for frame i
maps frame i-1 coordinates into frame i, so the accumulated transform of frame
i is `compose(accumulated[i-1], pairwise[i])`, i.e. matrix `P_i @ A_{i-1}`.

Parameter representations are relative to a center of rotation `c`:
- similarity `[scale, rotation, tx, ty]`: T(x) = s R(theta) (x - c) + t + c
- affine `[a11, a12, a21, a22, tx, ty]`:   T(x) = A (x - c) + t + c
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

_Row = Tuple[float, float, float]


@dataclass(frozen=True)
class AffineTransform:
    """Immutable 2D affine mapping.

    `rows` holds the top two rows of the 3x3 homogeneous matrix (column-vector
    convention); the last row is implicitly [0, 0, 1]. `center` only matters
    when converting to/from elastix parameter vectors.
    """

    rows: Tuple[_Row, _Row] = ((1.0, 0.0, 0.0), (0.0, 1.0, 0.0))
    center: Tuple[float, float] = (0.0, 0.0)

    # --- Constructors ---

    @classmethod
    def identity(cls, center: Sequence[float] = (0.0, 0.0)) -> "AffineTransform":
        return cls(center=_as_center(center))

    @classmethod
    def from_matrix(cls, matrix, center: Sequence[float] = (0.0, 0.0)) -> "AffineTransform":
        """Build from a 2x3 or 3x3 homogeneous matrix.

        Raises:
            ValueError: If the shape is wrong or the 3x3 last row is not [0, 0, 1].
        """
        import numpy as np  # type: ignore

        arr = np.asarray(matrix, dtype="float64")
        if arr.shape == (3, 3):
            if not np.allclose(arr[2], [0.0, 0.0, 1.0]):
                raise ValueError(f"Not an affine matrix (last row {arr[2].tolist()}).")
            arr = arr[:2]
        elif arr.shape != (2, 3):
            raise ValueError(f"Affine matrix must be 2x3 or 3x3, got {arr.shape}.")
        rows = (
            (float(arr[0, 0]), float(arr[0, 1]), float(arr[0, 2])),
            (float(arr[1, 0]), float(arr[1, 1]), float(arr[1, 2])),
        )
        return cls(rows=rows, center=_as_center(center))

    @classmethod
    def from_parameters(
        cls, parameters: Sequence[float], center: Sequence[float] = (0.0, 0.0)
    ) -> "AffineTransform":
        """Build from elastix similarity parameters `[scale, rotation, tx, ty]`."""
        if len(parameters) != 4:
            raise ValueError(
                f"Similarity transform needs 4 parameters, got {len(parameters)}."
            )
        scale, theta, tx, ty = (float(p) for p in parameters)
        cos_t = scale * math.cos(theta)
        sin_t = scale * math.sin(theta)
        return cls._from_linear((cos_t, -sin_t, sin_t, cos_t), (tx, ty), center)

    @classmethod
    def from_affine_parameters(
        cls, parameters: Sequence[float], center: Sequence[float] = (0.0, 0.0)
    ) -> "AffineTransform":
        """Build from elastix 2D affine parameters `[a11, a12, a21, a22, tx, ty]`."""
        if len(parameters) != 6:
            raise ValueError(
                f"Affine transform needs 6 parameters, got {len(parameters)}."
            )
        a11, a12, a21, a22, tx, ty = (float(p) for p in parameters)
        return cls._from_linear((a11, a12, a21, a22), (tx, ty), center)

    @classmethod
    def from_translation(cls, tx: float, ty: float) -> "AffineTransform":
        return cls.from_parameters((1.0, 0.0, tx, ty))

    @classmethod
    def _from_linear(cls, linear, translation, center) -> "AffineTransform":
        a11, a12, a21, a22 = linear
        cx, cy = _as_center(center)
        tx, ty = translation
        # b = t + c - A c
        bx = tx + cx - (a11 * cx + a12 * cy)
        by = ty + cy - (a21 * cx + a22 * cy)
        return cls(rows=((a11, a12, bx), (a21, a22, by)), center=(cx, cy))

    # --- Representations ---

    @property
    def matrix(self):
        """3x3 homogeneous matrix as a new float64 ndarray."""
        import numpy as np  # type: ignore

        return np.array([self.rows[0], self.rows[1], (0.0, 0.0, 1.0)], dtype="float64")

    @property
    def matrix2x3(self):
        """2x3 matrix as expected by `cv2.warpAffine`."""
        import numpy as np  # type: ignore

        return np.array(self.rows, dtype="float64")

    @property
    def affine_parameters(self) -> List[float]:
        """`[a11, a12, a21, a22, tx, ty]` relative to `center`."""
        (a11, a12, _), (a21, a22, _) = self.rows
        tx, ty = self._translation_about_center()
        return [a11, a12, a21, a22, tx, ty]

    @property
    def parameters(self) -> List[float]:
        """`[scale, rotation, tx, ty]` relative to `center`.

        Raises:
            ValueError: If the linear part is not a (proper) similarity.
        """
        (a11, a12, _), (a21, a22, _) = self.rows
        det = a11 * a22 - a12 * a21
        tol = 1e-9 * max(1.0, abs(a11), abs(a12))
        if det <= 0 or abs(a11 - a22) > tol or abs(a12 + a21) > tol:
            raise ValueError("Transform is not a similarity; use affine_parameters.")
        scale = math.sqrt(det)
        theta = math.atan2(a21, a11)
        tx, ty = self._translation_about_center()
        return [scale, theta, tx, ty]

    def _translation_about_center(self) -> Tuple[float, float]:
        (a11, a12, bx), (a21, a22, by) = self.rows
        cx, cy = self.center
        # t = b + A c - c
        return (
            bx + (a11 * cx + a12 * cy) - cx,
            by + (a21 * cx + a22 * cy) - cy,
        )

    def with_center(self, center: Sequence[float]) -> "AffineTransform":
        """Same mapping, parameterized about a different center."""
        return AffineTransform(rows=self.rows, center=_as_center(center))

    # --- Algebra ---

    def inverse(self) -> "AffineTransform":
        """Algebraic inverse.

        Raises:
            ValueError: If the linear part is singular.
        """
        import numpy as np  # type: ignore

        try:
            inv = np.linalg.inv(self.matrix)
        except np.linalg.LinAlgError as exc:
            raise ValueError("Cannot invert a singular affine transform.") from exc
        return AffineTransform.from_matrix(inv, center=self.center)

    def is_identity(self, atol: float = 1e-9) -> bool:
        import numpy as np  # type: ignore

        return bool(np.allclose(self.matrix, np.eye(3), rtol=0.0, atol=atol))

    def allclose(self, other: "AffineTransform", atol: float = 1e-9) -> bool:
        """Mapping equality within `atol` (centers are ignored)."""
        import numpy as np  # type: ignore

        return bool(np.allclose(self.matrix, other.matrix, rtol=0.0, atol=atol))

    def apply(self, points):
        """Map an (n, 2) array of points; returns a float64 (n, 2) array."""
        import numpy as np  # type: ignore

        pts = np.asarray(points, dtype="float64").reshape(-1, 2)
        return pts @ self.matrix2x3[:, :2].T + self.matrix2x3[:, 2]


def compose(first: AffineTransform, then: AffineTransform) -> AffineTransform:
    """Transform equivalent to mapping points with `first`, then with `then`.

    The result is parameterized about the center of `then`.
    """
    return AffineTransform.from_matrix(then.matrix @ first.matrix, center=then.center)


def compose_all(transforms: Iterable[AffineTransform]) -> AffineTransform:
    """Left-to-right composition; identity for an empty sequence."""
    result = None
    for transform in transforms:
        result = transform if result is None else compose(result, transform)
    return result if result is not None else AffineTransform.identity()


def _as_center(center: Sequence[float]) -> Tuple[float, float]:
    values = tuple(float(c) for c in center)
    if len(values) != 2:
        raise ValueError(f"Center of rotation must have 2 coordinates, got {len(values)}.")
    return values  # type: ignore[return-value]
