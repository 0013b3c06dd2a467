"""Stack manifest, frame listing and elastix parameter file I/O.

A stack manifest (YAML) describes one blockface run: where the frames live,
the pairwise transforms that register each frame onto the previous one, and
which frames are non-propagating. Frame indices are 0-based throughout.
"""

from __future__ import annotations

import glob
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from blockface.errors import ConfigurationError
from blockface.transforms import AffineTransform, compose

logger = logging.getLogger(__name__)

DEFAULT_FRAME_PATTERNS = ("*.png", "*.tif", "*.tiff", "*.jpg", "*.jpeg", "*.bmp")


@dataclass
class StackConfig:
    """Container for a blockface stack loaded from a manifest."""
    input_dir: Path
    output_dir: Path
    frames: List[str]
    transforms: List[AffineTransform]
    non_propagating: List[int] = field(default_factory=list)
    center: Tuple[float, float] = (0.0, 0.0)
    max_workers: Optional[int] = None
    resampler: str = "opencv"
    resampler_options: Dict[str, Any] = field(default_factory=dict)
    manifest_path: Optional[Path] = field(default=None, repr=False)


# --- Frame listing ---

def list_frames(input_dir: Path, pattern: Optional[str] = None) -> List[str]:
    """List frame file names of a directory in acquisition order.

    Args:
        input_dir: Directory holding the blockface images.
        pattern: Optional glob pattern; defaults to common image extensions.

    Returns:
        File names (not paths), numerically sorted when names carry numbers.

    Raises:
        FileNotFoundError: If the directory is missing or has no frames.
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise FileNotFoundError(f"Input directory not found: {input_dir}")

    patterns = [pattern] if pattern else list(DEFAULT_FRAME_PATTERNS)
    names = set()
    for pat in patterns:
        names.update(Path(p).name for p in glob.glob(str(input_dir / pat)))
    if not names:
        raise FileNotFoundError(f"No frames found in directory: {input_dir}")
    return sorted(names, key=_frame_sort_key)


def _frame_sort_key(name: str):
    """Numeric order if the name carries numbers, else lexicographic."""
    numbers = _extract_numbers(name)
    if numbers:
        return (0, numbers, name)
    return (1, [], name)


def _extract_numbers(name: str) -> List[int]:
    return [int(n) for n in re.findall(r"\d+", name)]


# --- Elastix parameter files ---

_ELASTIX_LINE = re.compile(r"^\(\s*(\w+)\s*(.*?)\s*\)\s*$")
_ELASTIX_TOKEN = re.compile(r'"([^"]*)"|(\S+)')


def parse_elastix_parameters(text: str) -> Dict[str, List[Any]]:
    """Parse elastix `(Key value ...)` lines into a dict of value lists.

    Comments (`//`) and blank lines are ignored; numbers become floats,
    quoted values stay strings.
    """
    params: Dict[str, List[Any]] = {}
    for raw in text.splitlines():
        line = raw.split("//", 1)[0].strip()
        if not line:
            continue
        match = _ELASTIX_LINE.match(line)
        if match is None:
            logger.warning("Skipping unparsable elastix line: %s", raw)
            continue
        key, body = match.groups()
        values: List[Any] = []
        for quoted, bare in _ELASTIX_TOKEN.findall(body):
            if bare:
                try:
                    values.append(float(bare))
                except ValueError:
                    values.append(bare)
            else:
                values.append(quoted)
        params[key] = values
    return params


def read_elastix_parameters(path: Path) -> AffineTransform:
    """Read an elastix TransformParameters file into an AffineTransform.

    Supports SimilarityTransform, EulerTransform, TranslationTransform and
    AffineTransform in 2D. An initial transform file (elastix "Compose"
    chaining) is read recursively and applied first.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the transform kind or its parameters are unsupported.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Transform parameter file not found: {path}")
    params = parse_elastix_parameters(path.read_text(encoding="utf-8"))

    kind = _single(params, "Transform", path)
    values = [float(v) for v in params.get("TransformParameters", [])]
    center = [float(v) for v in params.get("CenterOfRotationPoint", [0.0, 0.0])]

    if kind == "SimilarityTransform":
        transform = AffineTransform.from_parameters(values, center=center)
    elif kind == "EulerTransform":
        if len(values) != 3:
            raise ValueError(f"2D EulerTransform needs 3 parameters in {path}")
        theta, tx, ty = values
        transform = AffineTransform.from_parameters([1.0, theta, tx, ty], center=center)
    elif kind == "TranslationTransform":
        if len(values) != 2:
            raise ValueError(f"2D TranslationTransform needs 2 parameters in {path}")
        transform = AffineTransform.from_parameters([1.0, 0.0] + values, center=center)
    elif kind == "AffineTransform":
        transform = AffineTransform.from_affine_parameters(values, center=center)
    else:
        raise ValueError(f"Unsupported elastix transform {kind!r} in {path}")

    spacing = params.get("Spacing")
    origin = params.get("Origin")
    if (spacing and any(float(s) != 1.0 for s in spacing)) or (
        origin and any(float(o) != 0.0 for o in origin)
    ):
        # Physical coordinates are treated as pixel coordinates downstream.
        logger.warning("Non-unit spacing or non-zero origin in %s; treated as pixels.", path)

    initial = params.get("InitialTransformParametersFileName", ["NoInitialTransform"])[0]
    if initial and initial != "NoInitialTransform":
        how = params.get("HowToCombineTransforms", ["Compose"])[0]
        if how != "Compose":
            raise ValueError(f"Unsupported HowToCombineTransforms {how!r} in {path}")
        initial_path = Path(initial)
        if not initial_path.is_absolute():
            initial_path = path.parent / initial_path
        transform = compose(read_elastix_parameters(initial_path), transform)

    return transform


def write_elastix_parameters(
    path: Path,
    transform: AffineTransform,
    size: Tuple[int, int],
    result_format: str = "png",
    pixel_type: str = "unsigned char",
    interpolation_order: int = 1,
    default_pixel_value: float = 0.0,
) -> Path:
    """Write a transform as a 2D elastix AffineTransform parameter file.

    Args:
        size: (width, height) of the output image in pixels.
    """
    path = Path(path)
    a11, a12, a21, a22, tx, ty = transform.affine_parameters
    cx, cy = transform.center
    lines = [
        '(Transform "AffineTransform")',
        "(NumberOfParameters 6)",
        f"(TransformParameters {a11:.10f} {a12:.10f} {a21:.10f} {a22:.10f} {tx:.10f} {ty:.10f})",
        '(InitialTransformParametersFileName "NoInitialTransform")',
        '(HowToCombineTransforms "Compose")',
        "(FixedImageDimension 2)",
        "(MovingImageDimension 2)",
        '(FixedInternalImagePixelType "float")',
        '(MovingInternalImagePixelType "float")',
        f"(Size {int(size[0])} {int(size[1])})",
        "(Index 0 0)",
        "(Spacing 1.0000000000 1.0000000000)",
        "(Origin 0.0000000000 0.0000000000)",
        "(Direction 1.0000000000 0.0000000000 0.0000000000 1.0000000000)",
        '(UseDirectionCosines "true")',
        f"(CenterOfRotationPoint {cx:.10f} {cy:.10f})",
        '(ResampleInterpolator "FinalBSplineInterpolator")',
        f"(FinalBSplineInterpolationOrder {int(interpolation_order)})",
        '(Resampler "DefaultResampler")',
        f"(DefaultPixelValue {float(default_pixel_value):.6f})",
        f'(ResultImageFormat "{result_format}")',
        f'(ResultImagePixelType "{pixel_type}")',
        '(CompressResultImage "false")',
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _single(params: Dict[str, List[Any]], key: str, path: Path) -> Any:
    values = params.get(key)
    if not values:
        raise ValueError(f"Missing ({key} ...) in {path}")
    return values[0]


# --- Manifest I/O ---

def load_stack_config(manifest_path) -> StackConfig:
    """Load a stack manifest (YAML) into a StackConfig.

    Relative paths in the manifest are resolved against the manifest's
    directory.

    Raises:
        FileNotFoundError: If the manifest or a referenced file is missing.
        ConfigurationError: If the manifest content is invalid.

    Example:
        config = load_stack_config("data/manifests/stack.yaml")
    """
    manifest_path = Path(manifest_path)
    if not manifest_path.exists():
        raise FileNotFoundError(f"Manifest not found: {manifest_path}")
    data = _load_yaml(manifest_path)
    stack = data.get("stack")
    if not isinstance(stack, dict):
        raise ConfigurationError("Manifest format error: missing top-level 'stack' mapping.")

    root_dir = manifest_path.resolve().parent
    input_dir = stack.get("input_dir")
    output_dir = stack.get("output_dir")
    if not input_dir or not output_dir:
        raise ConfigurationError("Manifest requires stack.input_dir and stack.output_dir.")
    input_dir = _resolve(root_dir, input_dir)
    output_dir = _resolve(root_dir, output_dir)

    center = stack.get("center") or [0.0, 0.0]
    if not isinstance(center, (list, tuple)) or len(center) != 2:
        raise ConfigurationError(f"stack.center must be [x, y], got {center!r}")
    center = (float(center[0]), float(center[1]))

    entries = stack.get("frames")
    if entries is None:
        names = list_frames(input_dir, stack.get("frame_pattern"))
        vectors = stack.get("transforms")
        if vectors is None:
            transforms = [AffineTransform.identity(center) for _ in names]
        else:
            if not isinstance(vectors, list) or len(vectors) != len(names):
                raise ConfigurationError(
                    f"stack.transforms must list one transform per frame ({len(names)})."
                )
            transforms = [_transform_from_entry({"transform": v}, center, root_dir) for v in vectors]
    else:
        if not isinstance(entries, list) or not entries:
            raise ConfigurationError("stack.frames must be a non-empty list.")
        names = []
        transforms = []
        for entry in entries:
            if isinstance(entry, str):
                entry = {"name": entry}
            if not isinstance(entry, dict) or not entry.get("name"):
                raise ConfigurationError(f"Incomplete frame entry: {entry!r}")
            names.append(str(entry["name"]))
            transforms.append(_transform_from_entry(entry, center, root_dir))

    non_propagating = stack.get("non_propagating") or []
    if not isinstance(non_propagating, list) or not all(
        isinstance(i, int) and not isinstance(i, bool) for i in non_propagating
    ):
        raise ConfigurationError("stack.non_propagating must be a list of integers.")

    max_workers = stack.get("max_workers")
    if max_workers is not None and (not isinstance(max_workers, int) or max_workers < 1):
        raise ConfigurationError(f"stack.max_workers must be a positive integer, got {max_workers!r}")

    config = StackConfig(
        input_dir=input_dir,
        output_dir=output_dir,
        frames=names,
        transforms=transforms,
        non_propagating=list(non_propagating),
        center=center,
        max_workers=max_workers,
        resampler=str(stack.get("resampler", "opencv")),
        resampler_options=dict(stack.get("resampler_options") or {}),
        manifest_path=manifest_path,
    )
    logger.info(
        "load_stack_config manifest=%s frames=%s input=%s output=%s non_propagating=%s",
        manifest_path,
        len(config.frames),
        config.input_dir,
        config.output_dir,
        config.non_propagating,
    )
    return config


def _transform_from_entry(
    entry: Dict[str, Any], center: Tuple[float, float], root_dir: Path
) -> AffineTransform:
    """Resolve a frame's pairwise transform from a vector or an elastix file."""
    if entry.get("transform_file"):
        return read_elastix_parameters(_resolve(root_dir, entry["transform_file"]))
    vector = entry.get("transform")
    if vector is None:
        return AffineTransform.identity(center)
    if not isinstance(vector, (list, tuple)):
        raise ConfigurationError(f"Transform must be a list of numbers, got {vector!r}")
    return transform_from_vector(vector, center)


def transform_from_vector(vector: Sequence[float], center=(0.0, 0.0)) -> AffineTransform:
    """2 values: translation; 4: similarity; 6: affine."""
    try:
        values = [float(v) for v in vector]
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Transform vector must be a list of numbers, got {vector!r}") from exc
    if len(values) == 2:
        return AffineTransform.from_parameters([1.0, 0.0] + values, center=center)
    if len(values) == 4:
        return AffineTransform.from_parameters(values, center=center)
    if len(values) == 6:
        return AffineTransform.from_affine_parameters(values, center=center)
    raise ConfigurationError(f"Transform vector must have 2, 4 or 6 values, got {len(values)}")


def _resolve(root_dir: Path, value) -> Path:
    path = Path(value)
    return path if path.is_absolute() else (root_dir / path)


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except ModuleNotFoundError as exc:
        raise ModuleNotFoundError("PyYAML is required to read manifests. Install it first.") from exc
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigurationError("YAML root must be a mapping.")
    return data
