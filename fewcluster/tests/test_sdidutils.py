import pytest
import numpy as np
import pandas as pd
from unittest.mock import patch
import cvxpy as cp # For mocking SolverError

from fewcluster.utils.sdidutils import (
    aggregate_sdid,
    compute_regularization,
    fit_time_weights,
    sdid_effect,
    synthetic_control_att,
    unit_weights,
)
from fewcluster.exceptions import (
    AggregationFailedError,
    FewClusterConfigError,
    FewClusterDataError,
    FewClusterEstimationError,
    InsufficientClustersError,
    NoTreatedUnitsError,
)


# Fixtures
@pytest.fixture
def sample_Y0_pre_donors() -> np.ndarray:
    """Sample donor outcomes in pre-treatment period with varied differences."""
    return np.array([[1, 2, 3], [4, 5, 7], [7, 9, 10], [10, 12, 14]], dtype=float)


@pytest.fixture
def sample_y_pre_mean_treated() -> np.ndarray:
    return np.array([2, 5, 8, 11], dtype=float)


# ----------------------------------------------------------------------
# Weight problems
# ----------------------------------------------------------------------

def test_unit_weights_smoke(sample_Y0_pre_donors, sample_y_pre_mean_treated):
    intercept, weights = unit_weights(sample_Y0_pre_donors, sample_y_pre_mean_treated, 0.1)
    assert intercept is not None
    assert weights.shape == (3,)
    assert np.all(weights >= -1e-6)
    assert np.isclose(weights.sum(), 1.0)


def test_unit_weights_invalid_inputs(sample_Y0_pre_donors, sample_y_pre_mean_treated):
    with pytest.raises(FewClusterDataError, match="must be a NumPy array"):
        unit_weights("not_an_array", sample_y_pre_mean_treated, 0.1)  # type: ignore
    with pytest.raises(FewClusterConfigError, match="regularization_parameter_zeta"):
        unit_weights(sample_Y0_pre_donors, sample_y_pre_mean_treated, -1.0)
    with pytest.raises(FewClusterDataError, match="Shape mismatch"):
        unit_weights(sample_Y0_pre_donors, sample_y_pre_mean_treated[:-1], 0.1)


@patch('cvxpy.Problem.solve')
def test_unit_weights_solver_error(mock_solve, sample_Y0_pre_donors, sample_y_pre_mean_treated):
    mock_solve.side_effect = cp.error.SolverError("CVXPY Test Solver Error")
    with pytest.raises(FewClusterEstimationError, match="CVXPY solver failed in unit_weights"):
        unit_weights(sample_Y0_pre_donors, sample_y_pre_mean_treated, 0.1)


def test_fit_time_weights_smoke(sample_Y0_pre_donors):
    intercept, weights = fit_time_weights(sample_Y0_pre_donors, sample_Y0_pre_donors.mean(axis=0) + 0.5)
    assert intercept is not None
    assert weights.shape == (4,)
    assert np.isclose(weights.sum(), 1.0)


def test_fit_time_weights_shape_mismatch(sample_Y0_pre_donors):
    with pytest.raises(FewClusterDataError, match="Shape mismatch"):
        fit_time_weights(sample_Y0_pre_donors, np.ones(2))


def test_compute_regularization(sample_Y0_pre_donors):
    diffs = np.diff(sample_Y0_pre_donors, axis=0).flatten()
    expected = 4 ** 0.25 * np.std(diffs, ddof=1)
    assert compute_regularization(sample_Y0_pre_donors, 4) == pytest.approx(expected)
    assert compute_regularization(sample_Y0_pre_donors[:1], 16) == pytest.approx(2.0)


def test_sdid_effect_needs_pre_and_post(sample_Y0_pre_donors, sample_y_pre_mean_treated):
    with pytest.raises(FewClusterDataError, match="at least one pre- and one post-treatment period"):
        sdid_effect(sample_y_pre_mean_treated, sample_Y0_pre_donors, 4)


def test_sdid_effect_non_optimal_status_gives_nan(sample_Y0_pre_donors, sample_y_pre_mean_treated):
    class MockProblem:
        status = "infeasible_inaccurate"

        def solve(self, *args, **kwargs):
            pass

    with patch('cvxpy.Problem', return_value=MockProblem()):
        assert np.isnan(sdid_effect(sample_y_pre_mean_treated, sample_Y0_pre_donors, 2))


# ----------------------------------------------------------------------
# Synthetic control ATT
# ----------------------------------------------------------------------

def test_synthetic_control_att_exact(two_way_panel):
    panel = two_way_panel.loc[two_way_panel["unit"] != 2]
    assert synthetic_control_att(panel, "y", "unit", "period", "treat") == pytest.approx(1.5, abs=1e-4)


def test_synthetic_control_att_collapses_duplicate_rows(two_way_panel):
    panel = two_way_panel.loc[two_way_panel["unit"] != 2]
    upper = panel.assign(y=panel["y"] + 0.5, w=1.0)
    lower = panel.assign(y=panel["y"] - 0.25, w=2.0)
    micro = pd.concat([upper, lower], ignore_index=True)
    att = synthetic_control_att(micro, "y", "unit", "period", "treat", weight="w")
    assert att == pytest.approx(1.5, abs=1e-4)


def test_synthetic_control_att_projects_covariates(two_way_panel):
    rng = np.random.default_rng(4)
    panel = two_way_panel.loc[two_way_panel["unit"] != 2].copy()
    panel["x"] = rng.normal(0.0, 1.0, len(panel))
    panel["y"] = panel["y"] + 0.7 * panel["x"]
    att = synthetic_control_att(panel, "y", "unit", "period", "treat", covariates=["x"])
    assert att == pytest.approx(1.5, abs=1e-4)


def test_synthetic_control_att_requires_common_onset(two_way_panel):
    df = two_way_panel.copy()
    df.loc[(df["unit"] == 2) & (df["period"] == 4), "treat"] = 0
    with pytest.raises(FewClusterDataError, match="share one onset"):
        synthetic_control_att(df, "y", "unit", "period", "treat")


def test_synthetic_control_att_unbalanced(two_way_panel):
    panel = two_way_panel.loc[two_way_panel["unit"] != 2].iloc[1:]
    with pytest.raises(FewClusterDataError, match="not strongly balanced"):
        synthetic_control_att(panel, "y", "unit", "period", "treat")


@patch('cvxpy.Problem.solve')
def test_synthetic_control_att_solver_error(mock_solve, two_way_panel):
    mock_solve.side_effect = cp.error.SolverError("CVXPY Test Solver Error")
    panel = two_way_panel.loc[two_way_panel["unit"] != 2]
    with pytest.raises(FewClusterEstimationError, match="CVXPY solver failed"):
        synthetic_control_att(panel, "y", "unit", "period", "treat")


# ----------------------------------------------------------------------
# Aggregation
# ----------------------------------------------------------------------

@pytest.mark.parametrize("treated_units", [(1,), (1, 2), (1, 3, 5)])
def test_aggregate_exact_for_any_number_of_treated_units(panel_factory, treated_units):
    df = panel_factory(n_units=9, treated_units=treated_units, effect=-0.8)
    att, effects, excluded = aggregate_sdid(df, "y", "unit", "period", "treat", weight="pop")
    assert att == pytest.approx(-0.8, abs=1e-4)
    assert [e.unit for e in effects] == list(treated_units)
    assert excluded == []


def test_aggregate_weights_by_first_period_weight(two_way_panel):
    df = two_way_panel.copy()
    df.loc[(df["unit"] == 2) & (df["treat"] == 1), "y"] += 2.0  # unit 2 has effect 3.5
    att, effects, _ = aggregate_sdid(df, "y", "unit", "period", "treat", weight="pop")
    by_unit = {e.unit: e for e in effects}
    assert by_unit[1].att == pytest.approx(1.5, abs=1e-4)
    assert by_unit[2].att == pytest.approx(3.5, abs=1e-4)
    assert by_unit[1].weight == pytest.approx(101.0)
    assert by_unit[2].weight == pytest.approx(201.0)
    assert att == pytest.approx((101.0 * 1.5 + 201.0 * 3.5) / 302.0, abs=1e-4)


def test_aggregate_without_weight_is_plain_mean(two_way_panel):
    df = two_way_panel.copy()
    df.loc[(df["unit"] == 2) & (df["treat"] == 1), "y"] += 2.0
    att, _, _ = aggregate_sdid(df, "y", "unit", "period", "treat")
    assert att == pytest.approx(2.5, abs=1e-4)


def test_aggregate_excludes_unit_with_undefined_weight(two_way_panel):
    df = two_way_panel.copy()
    df.loc[(df["unit"] == 2) & (df["period"] == 1), "pop"] = np.nan
    with pytest.warns(UserWarning, match="Excluding treated unit 2"):
        att, effects, excluded = aggregate_sdid(df, "y", "unit", "period", "treat", weight="pop")
    assert excluded == [2]
    assert [e.unit for e in effects] == [1]
    assert att == pytest.approx(1.5, abs=1e-4)


def test_aggregate_excludes_unit_without_pre_period(two_way_panel):
    df = two_way_panel.copy()
    df.loc[df["unit"] == 3, "treat"] = 1  # treated from the first period
    with pytest.warns(UserWarning, match="Synthetic control fit failed for treated unit 3"):
        att, effects, excluded = aggregate_sdid(df, "y", "unit", "period", "treat", weight="pop")
    assert excluded == [3]
    assert [e.unit for e in effects] == [1, 2]
    assert att == pytest.approx(1.5, abs=1e-4)


def test_aggregate_excludes_unit_with_unbalanced_subpanel(two_way_panel):
    df = two_way_panel.loc[~((two_way_panel["unit"] == 2) & (two_way_panel["period"] == 2))]
    with pytest.warns(UserWarning, match="Excluding treated unit 2"):
        att, effects, excluded = aggregate_sdid(df, "y", "unit", "period", "treat", weight="pop")
    assert excluded == [2]
    assert [e.unit for e in effects] == [1]
    assert att == pytest.approx(1.5, abs=1e-4)


def test_aggregate_all_excluded(two_way_panel):
    df = two_way_panel.copy()
    df.loc[df["unit"].isin([1, 2]) & (df["period"] == 1), "pop"] = np.nan
    with pytest.warns(UserWarning):
        with pytest.raises(AggregationFailedError, match="All 2 treated units were excluded"):
            aggregate_sdid(df, "y", "unit", "period", "treat", weight="pop")


@patch('cvxpy.Problem.solve')
def test_aggregate_solver_failure_for_every_unit(mock_solve, two_way_panel):
    mock_solve.side_effect = cp.error.SolverError("CVXPY Test Solver Error")
    with pytest.warns(UserWarning, match="Synthetic control fit failed"):
        with pytest.raises(AggregationFailedError):
            aggregate_sdid(two_way_panel, "y", "unit", "period", "treat")


def test_aggregate_no_treated_units(two_way_panel):
    with pytest.raises(NoTreatedUnitsError):
        aggregate_sdid(two_way_panel.assign(treat=0), "y", "unit", "period", "treat")


def test_aggregate_no_never_treated_units(two_way_panel):
    df = two_way_panel.assign(treat=(two_way_panel["period"] >= 4).astype(int))
    with pytest.raises(InsufficientClustersError, match="never-treated"):
        aggregate_sdid(df, "y", "unit", "period", "treat")
