import pytest
import numpy as np
import pandas as pd

from fewcluster.utils.datautils import (
    balance,
    collapse_cells,
    first_period_weights,
    parse_fe_spec,
    post_indicator,
    split_term,
    treatment_assignment,
    validate_panel,
)
from fewcluster.exceptions import FewClusterConfigError, FewClusterDataError


# ----------------------------------------------------------------------
# parse_fe_spec / split_term
# ----------------------------------------------------------------------

def test_parse_fe_spec_interactions():
    assert parse_fe_spec("state^year + state^qc + year^qc") == ["state^year", "state^qc", "year^qc"]


def test_parse_fe_spec_accepts_stata_notation_and_spaces():
    assert parse_fe_spec(" state # year +  qc ") == ["state^year", "qc"]


def test_parse_fe_spec_empty_string():
    assert parse_fe_spec("") == []
    assert parse_fe_spec("   ") == []


@pytest.mark.parametrize("bad", ["state^", "state^^year", "state-year", "a^b + c d"])
def test_parse_fe_spec_malformed(bad):
    with pytest.raises(FewClusterConfigError, match="Malformed fixed-effects term"):
        parse_fe_spec(bad)


def test_parse_fe_spec_non_string():
    with pytest.raises(FewClusterConfigError, match="must be a string"):
        parse_fe_spec(["state"])


def test_split_term():
    assert split_term("unemp:qc") == ["unemp", "qc"]
    assert split_term("state^year") == ["state", "year"]
    assert split_term("age") == ["age"]


# ----------------------------------------------------------------------
# balance / validate_panel
# ----------------------------------------------------------------------

def test_balance_duplicates(two_way_panel):
    df = pd.concat([two_way_panel, two_way_panel.iloc[[0]]])
    with pytest.raises(FewClusterDataError, match="Duplicate observations"):
        balance(df, "unit", "period")


def test_balance_unbalanced(two_way_panel):
    with pytest.raises(FewClusterDataError, match="not strongly balanced"):
        balance(two_way_panel.iloc[1:], "unit", "period")


def test_validate_panel_ok(two_way_panel):
    validate_panel(two_way_panel, "unit", "period", "treat", weight="pop")


def test_validate_panel_missing_column(two_way_panel):
    with pytest.raises(FewClusterDataError, match="Missing required columns"):
        validate_panel(two_way_panel, "unit", "period", "treat", weight="nope")


def test_validate_panel_nan_in_key_column(two_way_panel):
    df = two_way_panel.copy()
    df.loc[3, "period"] = np.nan
    with pytest.raises(FewClusterDataError, match="Missing values detected"):
        validate_panel(df, "unit", "period", "treat")


def test_validate_panel_non_binary_treatment(two_way_panel):
    df = two_way_panel.copy()
    df.loc[0, "treat"] = 2
    with pytest.raises(FewClusterDataError, match="must contain only 0 and 1"):
        validate_panel(df, "unit", "period", "treat")


def test_validate_panel_reverting_treatment(two_way_panel):
    df = two_way_panel.copy()
    last = df.index[(df["unit"] == 1) & (df["period"] == 6)]
    df.loc[last, "treat"] = 0
    with pytest.raises(FewClusterDataError, match=r"reverts to 0 after onset for units: \[1\]"):
        validate_panel(df, "unit", "period", "treat")


def test_validate_panel_negative_weight(two_way_panel):
    df = two_way_panel.copy()
    df.loc[5, "pop"] = -1.0
    with pytest.raises(FewClusterDataError, match="negative values"):
        validate_panel(df, "unit", "period", "treat", weight="pop")


def test_validate_panel_unit_in_two_clusters(two_way_panel):
    df = two_way_panel.copy()
    df["region"] = (df["unit"] > 4).astype(int)
    validate_panel(df, "unit", "period", "treat", cluster="region")
    df.loc[(df["unit"] == 2) & (df["period"] == 1), "region"] = 1
    with pytest.raises(FewClusterDataError, match="more than one cluster"):
        validate_panel(df, "unit", "period", "treat", cluster="region")


# ----------------------------------------------------------------------
# Treatment assignment
# ----------------------------------------------------------------------

def test_treatment_assignment(two_way_panel):
    assignment = treatment_assignment(two_way_panel, "unit", "period", "treat")
    assert assignment["ever_treated"].sum() == 2
    assert assignment.loc[1, "onset"] == 4
    assert assignment.loc[2, "onset"] == 4
    assert np.isnan(assignment.loc[5, "onset"])


def test_post_indicator_uses_earliest_onset(two_way_panel):
    df = two_way_panel.copy()
    df.loc[(df["unit"] == 2) & (df["period"] == 4), "treat"] = 0  # unit 2 starts at 5
    post = post_indicator(df, "unit", "period", "treat")
    assert (post == (df["period"] >= 4).astype(int)).all()


def test_post_indicator_without_treated(two_way_panel):
    df = two_way_panel.assign(treat=0)
    with pytest.raises(FewClusterDataError, match="no cluster is ever treated"):
        post_indicator(df, "unit", "period", "treat")


# ----------------------------------------------------------------------
# Weights and cells
# ----------------------------------------------------------------------

def test_first_period_weights_is_not_an_average(two_way_panel):
    weights = first_period_weights(two_way_panel, "unit", "period", "pop")
    # pop = 100 * unit + period, so the first period gives 100 * unit + 1
    assert weights.loc[3] == pytest.approx(301.0)


def test_first_period_weights_sums_rows_of_first_period():
    df = pd.DataFrame(
        {"unit": [1, 1, 1, 2, 2], "period": [2, 2, 3, 1, 2], "w": [1.0, 2.0, 10.0, 4.0, 5.0]}
    )
    weights = first_period_weights(df, "unit", "period", "w")
    assert weights.loc[1] == pytest.approx(3.0)
    assert weights.loc[2] == pytest.approx(4.0)


def test_first_period_weights_without_weight(two_way_panel):
    weights = first_period_weights(two_way_panel, "unit", "period", None)
    assert (weights == 1.0).all()
    assert len(weights) == 8


def test_collapse_cells_weighted_mean():
    df = pd.DataFrame({"g": ["a", "a", "b"], "y": [1.0, 3.0, 5.0], "w": [1.0, 3.0, 2.0]})
    cells = collapse_cells(df, ["g"], ["y"], "w")
    assert cells.set_index("g").loc["a", "y"] == pytest.approx(2.5)
    assert cells.set_index("g").loc["a", "w"] == pytest.approx(4.0)
    assert cells.set_index("g").loc["b", "y"] == pytest.approx(5.0)


def test_collapse_cells_zero_weight_gives_nan():
    df = pd.DataFrame({"g": ["a", "a"], "y": [1.0, 3.0], "w": [0.0, 0.0]})
    cells = collapse_cells(df, ["g"], ["y"], "w")
    assert np.isnan(cells.loc[0, "y"])
