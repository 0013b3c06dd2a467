import math

import numpy as np
import pytest

from blockface.transforms import AffineTransform, compose, compose_all


def test_identity_parameters():
    t = AffineTransform.identity(center=(50.0, 40.0))
    assert t.is_identity()
    assert t.parameters == pytest.approx([1.0, 0.0, 0.0, 0.0])
    assert AffineTransform.from_parameters([1, 0, 0, 0], center=(3, 4)).is_identity()


def test_similarity_parameters_about_center():
    center = (10.0, 20.0)
    t = AffineTransform.from_parameters([2.0, math.pi / 6, 3.0, -1.0], center=center)
    assert t.parameters == pytest.approx([2.0, math.pi / 6, 3.0, -1.0])
    # The center maps to center + t.
    assert t.apply([center])[0] == pytest.approx([13.0, 19.0])


def test_translation_maps_points():
    t = AffineTransform.from_translation(2.5, -1.0)
    out = t.apply([[0.0, 0.0], [4.0, 5.0]])
    np.testing.assert_allclose(out, [[2.5, -1.0], [6.5, 4.0]])


def test_compose_applies_first_then_second():
    shift = AffineTransform.from_translation(1.0, 0.0)
    rotate = AffineTransform.from_parameters([1.0, math.pi / 2, 0.0, 0.0])
    # shift then rotate: (0, 0) -> (1, 0) -> (0, 1)
    combined = compose(shift, rotate)
    assert combined.apply([[0.0, 0.0]])[0] == pytest.approx([0.0, 1.0])
    np.testing.assert_allclose(combined.matrix, rotate.matrix @ shift.matrix)


def test_inverse_cancels_transform():
    t = AffineTransform.from_parameters([1.1, 0.2, 5.0, -3.0], center=(64.0, 48.0))
    assert compose(t, t.inverse()).is_identity(atol=1e-12)
    assert compose(t.inverse(), t).is_identity(atol=1e-12)
    assert t.inverse().center == t.center


def test_inverse_of_singular_raises():
    singular = AffineTransform.from_affine_parameters([1, 2, 2, 4, 0, 0])
    with pytest.raises(ValueError):
        singular.inverse()


def test_affine_parameters_round_trip_through_center():
    params = [1.2, 0.1, -0.05, 0.9, 4.0, 2.0]
    t = AffineTransform.from_affine_parameters(params, center=(5.0, 7.0))
    assert t.affine_parameters == pytest.approx(params)
    with pytest.raises(ValueError):
        t.parameters


def test_with_center_keeps_mapping():
    t = AffineTransform.from_parameters([1.0, 0.3, 1.0, 2.0], center=(0.0, 0.0))
    moved = t.with_center((100.0, 50.0))
    assert moved.allclose(t)
    assert moved.parameters[:2] == pytest.approx([1.0, 0.3])
    assert moved.parameters[2:] != pytest.approx([1.0, 2.0])


def test_from_matrix_validation():
    AffineTransform.from_matrix(np.eye(3))
    AffineTransform.from_matrix([[1, 0, 2], [0, 1, 3]])
    with pytest.raises(ValueError):
        AffineTransform.from_matrix(np.eye(2))
    with pytest.raises(ValueError):
        AffineTransform.from_matrix([[1, 0, 0], [0, 1, 0], [0.1, 0, 1]])
    with pytest.raises(ValueError):
        AffineTransform.from_parameters([1, 0, 0])


def test_compose_all_empty_is_identity():
    assert compose_all([]).is_identity()
    t = AffineTransform.from_translation(1, 2)
    assert compose_all([t]) == t
