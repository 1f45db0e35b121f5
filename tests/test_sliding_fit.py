import numpy as np
import pytest

from deltaray_reco.exceptions import InvalidParameterError
from deltaray_reco.sliding_fit import TwoDSlidingFitResult


def _line(n=41):
    xs = np.arange(n, dtype=np.float64)
    return np.column_stack((xs, 0.5 * xs))


def test_straight_line_has_constant_direction():
    fit = TwoDSlidingFitResult(_line(), 20, 0.3)
    expected = np.array((2.0, 1.0)) / np.sqrt(5.0)
    for layer in fit.layer_fit_results:
        assert fit.layer_fit_results[layer].gradient == pytest.approx(0.0, abs=1e-9)
        assert np.allclose(fit.layer_direction(layer), expected)
        pos = fit.layer_position(layer)
        assert pos[1] == pytest.approx(0.5 * pos[0])


def test_end_layer_positions_match_line_ends():
    fit = TwoDSlidingFitResult(_line(), 20, 0.3)
    lo, hi = fit.get_global_min_layer_position(), fit.get_global_max_layer_position()
    assert lo[0] < 1.0
    assert hi[0] > 39.0
    assert fit.min_layer < fit.max_layer
    assert fit.n_layers <= fit.max_layer - fit.min_layer + 1


def test_queries_outside_range_extrapolate_along_line():
    fit = TwoDSlidingFitResult(_line(), 1000, 0.3)
    rL, _ = fit.get_local_position(np.array((60.0, 30.0)))
    pos = fit.get_global_fit_position(rL)
    assert np.allclose(pos, (60.0, 30.0))
    assert np.allclose(fit.get_global_fit_direction(rL), fit.get_global_max_layer_direction())


def test_axis_points_towards_increasing_z():
    pts = _line()[::-1].copy()
    pts[:, 1] *= -1.0
    fit = TwoDSlidingFitResult(pts, 5, 0.3)
    assert fit.axis[1] > 0.0


def test_degenerate_inputs():
    with pytest.raises(InvalidParameterError):
        TwoDSlidingFitResult(np.array([[1.0, 1.0]]), 5, 0.3)
    assert TwoDSlidingFitResult.try_fit(np.array([[1.0, 1.0], [1.0, 1.0]]), 5, 0.3) is None
    assert TwoDSlidingFitResult.try_fit(_line(), 5, 0.0) is None
