import re
import numpy as np
import pandas as pd
from typing import List, Optional, Sequence

from fewcluster.exceptions import FewClusterDataError, FewClusterConfigError


def split_term(term: str) -> List[str]:
    """Split a regressor (``"a:b"``) or absorbed term (``"a^b"``) into its columns."""
    return [part.strip() for part in re.split(r"[:^]", term) if part.strip()]


def parse_fe_spec(fe_spec: str) -> List[str]:
    """Parse a fixed-effects specification string into absorbed terms.

    Terms are separated by ``+``; interactions use fixest notation ``a^b``.
    Stata's ``a#b`` is accepted as a synonym.

    Parameters
    ----------
    fe_spec : str
        For example ``"state^year + state^qc + year^qc"``.

    Returns
    -------
    List[str]
        Normalised terms, e.g. ``["state^year", "state^qc", "year^qc"]``.
        An empty or blank string gives an empty list.

    Examples
    --------
    >>> parse_fe_spec("state#year + year ^ qc")
    ['state^year', 'year^qc']
    """
    if not isinstance(fe_spec, str):
        raise FewClusterConfigError("fe_spec must be a string.")
    terms: List[str] = []
    for raw_term in fe_spec.split("+"):
        parts = [p.strip() for p in re.split(r"[\^#]", raw_term)]
        if all(p == "" for p in parts):
            continue
        if any(p == "" or not re.fullmatch(r"\w+", p) for p in parts):
            raise FewClusterConfigError(f"Malformed fixed-effects term: '{raw_term.strip()}'.")
        terms.append("^".join(parts))
    return terms


def balance(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str) -> None:
    """Check if the panel is strongly balanced.

    A strongly balanced panel means every unit has an observation for every
    time period, and there are no duplicate unit-time observations.

    Raises
    ------
    FewClusterDataError
        If duplicate unit-time observations are found, or if not all units
        have observations for all time periods.
    """
    if df.duplicated([unit_id_column_name, time_period_column_name]).any():
        raise FewClusterDataError(
            "Duplicate observations found. Ensure each combination of unit and time is unique."
        )

    total_unique_time_periods = df[time_period_column_name].nunique()
    observations_per_unit = df.groupby(unit_id_column_name)[time_period_column_name].nunique()
    if not (observations_per_unit == total_unique_time_periods).all():
        raise FewClusterDataError(
            "The panel is not strongly balanced. Not all units have observations "
            "for all unique time periods in the dataset."
        )


def check_indicator(df: pd.DataFrame, column: str) -> None:
    """Raise `FewClusterDataError` unless `column` exists and holds only 0 and 1."""
    if column not in df.columns:
        raise FewClusterDataError(f"Missing required column in DataFrame: {column}")
    if not df[column].isin([0, 1]).all():
        raise FewClusterDataError(f"Indicator column '{column}' must contain only 0 and 1.")


def validate_panel(
    df: pd.DataFrame,
    unitid: str,
    time: str,
    treat: str,
    weight: Optional[str] = None,
    cluster: Optional[str] = None,
) -> None:
    """Validate the panel invariants the inference engines rely on.

    Checks that the key columns have no missing values, the treatment is a
    0/1 indicator that never reverts to 0 after onset within a unit, weights
    are non-negative, and (when `cluster` differs from `unitid`) that every
    unit belongs to exactly one cluster.

    Raises
    ------
    FewClusterDataError
        On the first violated invariant.
    """
    key_columns = [c for c in dict.fromkeys([unitid, time, treat, weight, cluster]) if c is not None]
    missing = set(key_columns) - set(df.columns)
    if missing:
        raise FewClusterDataError(f"Missing required columns in DataFrame: {', '.join(sorted(missing))}")

    nan_info = {c: int(df[c].isna().sum()) for c in key_columns if df[c].isna().any()}
    if nan_info:
        details = ", ".join(f"{c}: {n}" for c, n in nan_info.items())
        raise FewClusterDataError(f"Missing values detected in required columns -> {details}.")

    check_indicator(df, treat)

    # A unit whose treatment falls back to 0 after onset has a negative step somewhere.
    ordered = df[[unitid, time, treat]].sort_values([unitid, time])
    unit_time_treat = ordered.groupby([unitid, time], sort=True)[treat].max()
    steps = unit_time_treat.groupby(level=0).diff()
    if (steps < 0).any():
        reverting = sorted(set(steps[steps < 0].index.get_level_values(0).tolist()))
        raise FewClusterDataError(f"Treatment reverts to 0 after onset for units: {reverting}.")

    if weight is not None and (df[weight] < 0).any():
        raise FewClusterDataError(f"Weight column '{weight}' contains negative values.")

    if cluster is not None and cluster != unitid:
        clusters_per_unit = df.groupby(unitid)[cluster].nunique()
        if (clusters_per_unit > 1).any():
            split_units = clusters_per_unit[clusters_per_unit > 1].index.tolist()
            raise FewClusterDataError(f"Units assigned to more than one cluster: {split_units}.")


def treatment_assignment(df: pd.DataFrame, cluster: str, time: str, treat: str) -> pd.DataFrame:
    """Ever-treated flag and onset period for every cluster.

    Returns
    -------
    pd.DataFrame
        Indexed by cluster with columns ``ever_treated`` (bool) and ``onset``
        (first period with treatment, NaN for never-treated clusters).
    """
    treated_rows = df.loc[df[treat] == 1]
    onset = treated_rows.groupby(cluster)[time].min()
    clusters = pd.Index(pd.unique(df[cluster]), name=cluster)
    assignment = pd.DataFrame(index=clusters)
    assignment["ever_treated"] = assignment.index.isin(onset.index)
    assignment["onset"] = onset.reindex(assignment.index)
    return assignment


def post_indicator(df: pd.DataFrame, cluster: str, time: str, treat: str) -> pd.Series:
    """Post-period indicator: time at or after the earliest treatment onset."""
    assignment = treatment_assignment(df, cluster, time, treat)
    if not assignment["ever_treated"].any():
        raise FewClusterDataError("Cannot define a post period: no cluster is ever treated.")
    first_onset = assignment["onset"].min()
    return (df[time] >= first_onset).astype(int)


def first_period_weights(df: pd.DataFrame, unitid: str, time: str, weight: Optional[str]) -> pd.Series:
    """Weight of each unit in its earliest observed period.

    With several rows in that period the weights are summed, so a microdata
    panel yields the population proxy of the first year. Without a weight
    column every unit gets 1.
    """
    if weight is None:
        return pd.Series(1.0, index=pd.Index(pd.unique(df[unitid]), name=unitid))
    first_time = df.groupby(unitid)[time].transform("min")
    first_rows = df.loc[df[time] == first_time]
    return first_rows.groupby(unitid)[weight].sum(min_count=1).astype(float)


def collapse_cells(
    df: pd.DataFrame,
    keys: Sequence[str],
    values: Sequence[str],
    weight: Optional[str] = None,
) -> pd.DataFrame:
    """Collapse rows to one per `keys` cell using weight-weighted means.

    Cells whose total weight is zero get NaN means. The returned frame has the
    key columns, the averaged `values`, and (with a weight) the cell total in
    the weight column.
    """
    keys = list(keys)
    values = list(values)
    if weight is None:
        return df.groupby(keys, as_index=False, sort=True)[values].mean()
    w = df[weight].astype(float)
    weighted = df[values].astype(float).mul(w, axis=0)
    weighted[weight] = w
    for k in keys:
        weighted[k] = df[k]
    sums = weighted.groupby(keys, sort=True)[values + [weight]].sum()
    totals = sums[weight].replace(0.0, np.nan)
    out = sums[values].div(totals, axis=0)
    out[weight] = sums[weight]
    return out.reset_index()
