import numpy as np
import pandas as pd
import cvxpy as cp
from typing import Tuple, List, Optional, Any, Sequence
import warnings

from fewcluster.exceptions import (
    FewClusterDataError,
    FewClusterConfigError,
    FewClusterEstimationError,
    NoTreatedUnitsError,
    InsufficientClustersError,
    AggregationFailedError,
)
from fewcluster.config_models import UnitEffect
from fewcluster.utils.datautils import balance, collapse_cells, first_period_weights, treatment_assignment
from fewcluster.utils.regutils import AbsorbingRegression


def fit_time_weights(
    donor_outcomes_pre_treatment: np.ndarray, mean_donor_outcomes_post_treatment: np.ndarray
) -> Tuple[Optional[float], Optional[np.ndarray]]:
    """
    Fit time weights for SDID.

    Parameters
    ----------
    donor_outcomes_pre_treatment : np.ndarray
        Donor outcomes in pre-treatment period, shape (T0, N_donors).
    mean_donor_outcomes_post_treatment : np.ndarray
        Mean outcome of each donor unit in post-treatment period, shape (N_donors,).

    Returns
    -------
    Tuple[Optional[float], Optional[np.ndarray]]
        - intercept : the estimated intercept, or `None` if the optimization
          does not reach an optimal status.
        - time_weights : shape (T0,), non-negative and summing to 1, or `None`.

    Notes
    -----
    Minimises ``|| intercept + lambda' Y0_pre - mean(Y0_post) ||^2`` subject to
    ``sum(lambda) = 1`` and ``lambda >= 0``.
    """
    if not isinstance(donor_outcomes_pre_treatment, np.ndarray):
        raise FewClusterDataError("donor_outcomes_pre_treatment must be a NumPy array.")
    if donor_outcomes_pre_treatment.ndim != 2:
        raise FewClusterDataError("donor_outcomes_pre_treatment must be a 2D array (T0, N_donors).")
    if not isinstance(mean_donor_outcomes_post_treatment, np.ndarray):
        raise FewClusterDataError("mean_donor_outcomes_post_treatment must be a NumPy array.")
    if mean_donor_outcomes_post_treatment.ndim != 1:
        raise FewClusterDataError("mean_donor_outcomes_post_treatment must be a 1D array (N_donors,).")

    num_pre_treatment_periods, num_donors_pre = donor_outcomes_pre_treatment.shape
    num_donors_post = mean_donor_outcomes_post_treatment.shape[0]

    if num_pre_treatment_periods == 0:
        raise FewClusterDataError("donor_outcomes_pre_treatment cannot have zero pre-treatment periods (num_pre_treatment_periods must be > 0).")
    if num_donors_pre == 0:
        raise FewClusterDataError("donor_outcomes_pre_treatment cannot have zero donors if mean_donor_outcomes_post_treatment has donors.")
    if num_donors_pre != num_donors_post:
        raise FewClusterDataError(
            f"Shape mismatch: donor_outcomes_pre_treatment has {num_donors_pre} donors, "
            f"but mean_donor_outcomes_post_treatment has {num_donors_post} donors."
        )

    intercept_variable = cp.Variable()
    time_weights_variable = cp.Variable(num_pre_treatment_periods, nonneg=True)

    # Reconstruct the mean post-treatment donor outcomes from weighted pre-treatment periods.
    prediction = intercept_variable + (time_weights_variable @ donor_outcomes_pre_treatment)
    constraints = [cp.sum(time_weights_variable) == 1]
    objective = cp.Minimize(cp.sum_squares(prediction - mean_donor_outcomes_post_treatment))
    problem = cp.Problem(objective, constraints)

    try:
        problem.solve(solver=cp.CLARABEL)
    except cp.error.SolverError as e:
        raise FewClusterEstimationError(f"CVXPY solver failed in fit_time_weights: {e}") from e

    if problem.status in ["optimal", "optimal_inaccurate"]:
        return intercept_variable.value, time_weights_variable.value
    return None, None


def compute_regularization(
    donor_outcomes_pre_treatment: np.ndarray, num_post_treatment_periods: int
) -> float:
    """
    Compute regularization parameter zeta for unit weights.

    ``zeta = num_post_treatment_periods ** 0.25 * sd(first differences of donor outcomes)``.
    With fewer than two pre-treatment periods, no donors, or an undefined
    standard deviation, the standard deviation falls back to 1.0.

    Examples
    --------
    >>> Y0_short_pre_donors_ex = np.random.rand(1, 4)
    >>> round(compute_regularization(Y0_short_pre_donors_ex, 5), 2)
    1.5
    """
    if not isinstance(donor_outcomes_pre_treatment, np.ndarray):
        raise FewClusterDataError("donor_outcomes_pre_treatment must be a NumPy array.")
    if donor_outcomes_pre_treatment.ndim != 2:
        raise FewClusterDataError("donor_outcomes_pre_treatment must be a 2D array (T0, N_donors).")
    if not isinstance(num_post_treatment_periods, int) or num_post_treatment_periods < 0:
        raise FewClusterConfigError("num_post_treatment_periods must be a non-negative integer.")

    if donor_outcomes_pre_treatment.shape[0] < 2 or donor_outcomes_pre_treatment.shape[1] == 0:
        std_dev_of_first_differenced_donor_outcomes = 1.0
    else:
        diffs = np.diff(donor_outcomes_pre_treatment, axis=0)
        std_dev_of_first_differenced_donor_outcomes = float(np.std(diffs.flatten(), ddof=1)) if diffs.size > 1 else 1.0
        if np.isnan(std_dev_of_first_differenced_donor_outcomes):
            std_dev_of_first_differenced_donor_outcomes = 1.0

    regularization_parameter_zeta: float = (num_post_treatment_periods**0.25) * std_dev_of_first_differenced_donor_outcomes
    return float(regularization_parameter_zeta)


def unit_weights(
    donor_outcomes_pre_treatment: np.ndarray,
    mean_treated_outcome_pre_treatment: np.ndarray,
    regularization_parameter_zeta: float
) -> Tuple[Optional[float], Optional[np.ndarray]]:
    """
    Fit unit (donor) weights for SDID.

    Parameters
    ----------
    donor_outcomes_pre_treatment : np.ndarray
        Donor outcomes in pre-treatment period, shape (T0, N_donors).
    mean_treated_outcome_pre_treatment : np.ndarray
        Mean outcome of treated units in pre-treatment period, shape (T0,).
    regularization_parameter_zeta : float
        Regularization parameter.

    Returns
    -------
    Tuple[Optional[float], Optional[np.ndarray]]
        - intercept : the estimated intercept, or `None` on a non-optimal status.
        - unit_weights : shape (N_donors,), non-negative and summing to 1, or `None`.

    Notes
    -----
    Minimises ``|| intercept + Y0_pre omega - y_pre ||^2 + T0 zeta^2 ||omega||^2``
    subject to ``sum(omega) = 1`` and ``omega >= 0``.
    """
    if not isinstance(donor_outcomes_pre_treatment, np.ndarray):
        raise FewClusterDataError("donor_outcomes_pre_treatment must be a NumPy array.")
    if donor_outcomes_pre_treatment.ndim != 2:
        raise FewClusterDataError("donor_outcomes_pre_treatment must be a 2D array (T0, N_donors).")
    if not isinstance(mean_treated_outcome_pre_treatment, np.ndarray):
        raise FewClusterDataError("mean_treated_outcome_pre_treatment must be a NumPy array.")
    if mean_treated_outcome_pre_treatment.ndim != 1:
        raise FewClusterDataError("mean_treated_outcome_pre_treatment must be a 1D array (T0,).")
    if not isinstance(regularization_parameter_zeta, (float, int)) or regularization_parameter_zeta < 0:
        raise FewClusterConfigError("regularization_parameter_zeta must be a non-negative float or int.")

    num_pre_treatment_periods, num_donors = donor_outcomes_pre_treatment.shape

    if num_pre_treatment_periods == 0:
        raise FewClusterDataError("donor_outcomes_pre_treatment cannot have zero pre-treatment periods (num_pre_treatment_periods must be > 0).")
    if num_donors == 0:
        raise FewClusterDataError("donor_outcomes_pre_treatment cannot have zero donors (num_donors must be > 0).")
    if mean_treated_outcome_pre_treatment.shape[0] != num_pre_treatment_periods:
        raise FewClusterDataError(
            f"Shape mismatch: donor_outcomes_pre_treatment has {num_pre_treatment_periods} pre-periods, "
            f"but mean_treated_outcome_pre_treatment has {mean_treated_outcome_pre_treatment.shape[0]}."
        )

    intercept_variable = cp.Variable()
    unit_weights_variable = cp.Variable(num_donors, nonneg=True)

    prediction = intercept_variable + donor_outcomes_pre_treatment @ unit_weights_variable

    # L2 penalty: T0 * zeta^2 * ||omega||^2.
    penalty_coefficient = num_pre_treatment_periods * (float(regularization_parameter_zeta)**2)
    penalty = penalty_coefficient * cp.sum_squares(unit_weights_variable)

    objective = cp.Minimize(cp.sum_squares(prediction - mean_treated_outcome_pre_treatment) + penalty)
    constraints = [cp.sum(unit_weights_variable) == 1]
    problem = cp.Problem(objective, constraints)

    try:
        problem.solve(solver=cp.CLARABEL)
    except cp.error.SolverError as e:
        raise FewClusterEstimationError(f"CVXPY solver failed in unit_weights: {e}") from e

    if problem.status in ["optimal", "optimal_inaccurate"]:
        return intercept_variable.value, unit_weights_variable.value
    return None, None


def sdid_effect(
    treated_outcomes: np.ndarray, donor_outcomes: np.ndarray, num_pre_treatment_periods: int
) -> float:
    """
    SDID average treatment effect for one treated trajectory.

    Parameters
    ----------
    treated_outcomes : np.ndarray
        Outcome of the (mean) treated unit, shape (T,).
    donor_outcomes : np.ndarray
        Donor outcomes, shape (T, N_donors).
    num_pre_treatment_periods : int
        Number of leading periods before treatment onset.

    Returns
    -------
    float
        Mean over post periods of
        ``y_t - Y0_t omega - lambda'(y_pre - Y0_pre omega)``.
        NaN when either weight problem fails to reach an optimal status.
    """
    total_periods = treated_outcomes.shape[0]
    num_post_treatment_periods = total_periods - num_pre_treatment_periods
    if num_pre_treatment_periods < 1 or num_post_treatment_periods < 1:
        raise FewClusterDataError(
            f"SDID needs at least one pre- and one post-treatment period; got "
            f"{num_pre_treatment_periods} pre and {num_post_treatment_periods} post."
        )

    donor_pre = donor_outcomes[:num_pre_treatment_periods, :]
    treated_pre = treated_outcomes[:num_pre_treatment_periods]

    zeta = compute_regularization(donor_pre, num_post_treatment_periods)
    _, omega = unit_weights(donor_pre, treated_pre, zeta)
    _, lam = fit_time_weights(donor_pre, donor_outcomes[num_pre_treatment_periods:, :].mean(axis=0))
    if omega is None or lam is None:
        return np.nan

    synthetic_control = donor_outcomes @ omega
    # Time-weighted pre-period gap between the treated unit and its synthetic control.
    bias_correction = lam @ treated_pre - lam @ (donor_pre @ omega)
    effects = treated_outcomes - (synthetic_control + bias_correction)
    return float(np.mean(effects[num_pre_treatment_periods:]))


def _project_covariates(
    data: pd.DataFrame, outcome: str, unitid: str, time: str, treat: str, covariates: Sequence[str]
) -> pd.Series:
    """Outcome net of covariates, with coefficients estimated on untreated rows only."""
    untreated = data.loc[data[treat] == 0]
    fit = AbsorbingRegression(untreated, outcome, list(covariates), absorb=[unitid, time]).fit()
    contribution = sum(data[c].astype(float) * fit.coef[c] for c in covariates)
    return data[outcome].astype(float) - contribution


def synthetic_control_att(
    df: pd.DataFrame,
    outcome: str,
    unitid: str,
    time: str,
    treat: str,
    weight: Optional[str] = None,
    covariates: Optional[Sequence[str]] = None,
) -> float:
    """
    ATT of the treated unit(s) in `df` against the never-treated donors.

    Parameters
    ----------
    df : pd.DataFrame
        Panel restricted to the treated unit(s) and never-treated units.
        Several rows per (unit, time) are collapsed to their weighted mean.
    outcome, unitid, time, treat : str
        Column names.
    weight : Optional[str]
        Weight used only when collapsing rows into unit-time cells.
    covariates : Optional[Sequence[str]]
        Covariates projected out of the outcome before weighting.

    Returns
    -------
    float
        The SDID ATT, NaN if the weight optimisation did not converge.

    Raises
    ------
    NoTreatedUnitsError
        If no unit is treated.
    InsufficientClustersError
        If there is no never-treated donor.
    FewClusterDataError
        If treated units have different onsets or the collapsed panel is unbalanced.
    """
    covariates = list(covariates or [])
    columns = list(dict.fromkeys([unitid, time, treat, outcome] + covariates + ([weight] if weight else [])))
    data = df[columns]

    if data.duplicated([unitid, time]).any():
        cells = collapse_cells(data, [unitid, time], [outcome] + covariates, weight)
        cell_treat = data.groupby([unitid, time], sort=True)[treat].max().reset_index(drop=True)
        data = cells.assign(**{treat: cell_treat.to_numpy()})

    balance(data, unitid, time)

    if covariates:
        data = data.assign(**{outcome: _project_covariates(data, outcome, unitid, time, treat, covariates)})

    assignment = treatment_assignment(data, unitid, time, treat)
    treated_units = assignment.index[assignment["ever_treated"]].tolist()
    donor_units = assignment.index[~assignment["ever_treated"]].tolist()
    if not treated_units:
        raise NoTreatedUnitsError("No treated unit found for the synthetic control fit.")
    if not donor_units:
        raise InsufficientClustersError("No never-treated donor units available for the synthetic control fit.")
    onsets = assignment.loc[treated_units, "onset"].unique()
    if len(onsets) > 1:
        raise FewClusterDataError(f"Treated units must share one onset period; found {sorted(onsets)}.")

    wide = data.pivot(index=time, columns=unitid, values=outcome).sort_index()
    num_pre_treatment_periods = int((wide.index < onsets[0]).sum())
    treated_outcomes = wide[treated_units].to_numpy(dtype=float).mean(axis=1)
    donor_outcomes = wide[donor_units].to_numpy(dtype=float)
    return sdid_effect(treated_outcomes, donor_outcomes, num_pre_treatment_periods)


def aggregate_sdid(
    df: pd.DataFrame,
    outcome: str,
    unitid: str,
    time: str,
    treat: str,
    weight: Optional[str] = None,
    covariates: Optional[Sequence[str]] = None,
) -> Tuple[float, List[UnitEffect], List[Any]]:
    """
    Population-weighted SDID estimate over all ever-treated units.

    Each treated unit is fitted against the never-treated units alone; its
    ATT is weighted by the unit's weight in its first observed period. A unit
    whose fit fails (no pre-period, unbalanced subpanel, solver failure) is
    excluded with a warning.

    Returns
    -------
    Tuple[float, List[UnitEffect], List[Any]]
        The aggregate ATT, the included unit effects, and the excluded units.

    Raises
    ------
    NoTreatedUnitsError
        If no unit is ever treated.
    InsufficientClustersError
        If no unit is never treated.
    AggregationFailedError
        If every treated unit had to be excluded or the weights sum to zero.
    """
    assignment = treatment_assignment(df, unitid, time, treat)
    treated_units = assignment.index[assignment["ever_treated"]].tolist()
    never_treated = assignment.index[~assignment["ever_treated"]].tolist()
    if not treated_units:
        raise NoTreatedUnitsError("SDID requires at least one ever-treated unit; none found.")
    if not never_treated:
        raise InsufficientClustersError("SDID requires never-treated units; none found.")

    population_weights = first_period_weights(df, unitid, time, weight)

    unit_effects: List[UnitEffect] = []
    excluded_units: List[Any] = []
    for unit in treated_units:
        subpanel = df.loc[df[unitid].isin([unit] + never_treated)]
        try:
            att = synthetic_control_att(subpanel, outcome, unitid, time, treat, weight, covariates)
        except (FewClusterEstimationError, FewClusterDataError) as e:
            warnings.warn(f"Synthetic control fit failed for treated unit {unit!r}: {e}", UserWarning)
            att = np.nan
        unit_weight = float(population_weights.get(unit, np.nan))
        if not (np.isfinite(att) and np.isfinite(unit_weight)):
            warnings.warn(
                f"Excluding treated unit {unit!r} from the SDID aggregate (att={att}, weight={unit_weight}).",
                UserWarning,
            )
            excluded_units.append(unit)
            continue
        unit_effects.append(UnitEffect(unit=unit, att=float(att), weight=unit_weight))

    if not unit_effects:
        raise AggregationFailedError(
            f"All {len(treated_units)} treated units were excluded from the SDID aggregate."
        )
    weights = np.array([e.weight for e in unit_effects])
    atts = np.array([e.att for e in unit_effects])
    if weights.sum() <= 0:
        raise AggregationFailedError("Weights of the included treated units sum to zero.")
    return float(weights @ atts / weights.sum()), unit_effects, excluded_units
