"""Sequential stages: non-propagating cancellation and transform accumulation.

Both stages are pure: they take a sequence of pairwise transforms and return a
new tuple, leaving the input untouched. The finalized accumulated tuple is
what the parallel apply phase reads.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence, Tuple

from blockface.errors import ConfigurationError, ConsistencyError
from blockface.transforms import AffineTransform, compose

logger = logging.getLogger(__name__)


def cancel_non_propagating(
    pairwise: Sequence[AffineTransform],
    non_propagating: Iterable[int],
    atol: float = 1e-9,
) -> Tuple[AffineTransform, ...]:
    """Cancel the correction of non-propagating frames in the following frame.

    A non-propagating frame i (e.g. the microtome tray was not pushed all the
    way back for that one section) is corrected locally, but the next frame
    receives the inverse of its transform so the shift does not carry into the
    rest of the stack.

    Every index is checked against and cancelled with the ORIGINAL pairwise
    transforms, so the result does not depend on processing order.

    Args:
        pairwise: pairwise[i] registers frame i onto frame i-1 (0-based).
        non_propagating: 0-based indices of non-propagating frames.
        atol: Tolerance of the identity test on the successor transform.

    Returns:
        New tuple of pairwise transforms.

    Raises:
        ConfigurationError: If an index is outside the stack.
        ConsistencyError: If the successor of a non-propagating frame already
            has a non-identity transform.
    """
    original = tuple(pairwise)
    corrected = list(original)
    n_frames = len(original)

    for idx in sorted(set(int(i) for i in non_propagating)):
        if idx < 0 or idx >= n_frames:
            raise ConfigurationError(
                f"Non-propagating frame index {idx} out of range (frames={n_frames})."
            )
        # Last frame: there is no next frame to cancel the transform with.
        if idx == n_frames - 1:
            logger.debug("Non-propagating frame %s is the last frame; nothing to cancel.", idx)
            continue
        if not original[idx + 1].is_identity(atol=atol):
            raise ConsistencyError(idx, idx + 1)
        corrected[idx + 1] = original[idx].inverse().with_center(original[idx + 1].center)
        logger.debug("Cancelled transform of frame %s in frame %s.", idx, idx + 1)

    return tuple(corrected)


def accumulate_transforms(
    pairwise: Sequence[AffineTransform],
) -> Tuple[AffineTransform, ...]:
    """Compose pairwise corrections into one transform per frame.

    accumulated[0] is the identity (frame 0 is the reference), and
    accumulated[i] = compose(accumulated[i-1], pairwise[i]). The composition is
    always performed, even for identity pairwise transforms.
    """
    if not pairwise:
        return ()
    accumulated = [AffineTransform.identity(center=pairwise[0].center)]
    for transform in pairwise[1:]:
        accumulated.append(compose(accumulated[-1], transform))
    return tuple(accumulated)


def compute_frame_transforms(
    pairwise: Sequence[AffineTransform],
    non_propagating: Iterable[int] = (),
    atol: float = 1e-9,
) -> Tuple[AffineTransform, ...]:
    """Run cancellation then accumulation; returns the accumulated transforms."""
    non_propagating = sorted(set(int(i) for i in non_propagating))
    corrected = cancel_non_propagating(pairwise, non_propagating, atol=atol)
    accumulated = accumulate_transforms(corrected)
    n_moved = sum(1 for t in accumulated if not t.is_identity(atol=atol))
    logger.info(
        "Accumulated %s frame transforms (%s non-identity, non_propagating=%s)",
        len(accumulated),
        n_moved,
        non_propagating,
    )
    return accumulated
