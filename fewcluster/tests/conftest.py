# tests/conftest.py
import pytest
import numpy as np
import pandas as pd


def make_two_way_panel(
    n_units: int = 8,
    n_periods: int = 6,
    treated_units=(1, 2),
    onset: int = 4,
    effect: float = 1.5,
    noise: float = 0.0,
    seed: int = 0,
) -> pd.DataFrame:
    """Unit effects + time effects + a constant treatment effect."""
    rng = np.random.default_rng(seed)
    units = np.repeat(np.arange(1, n_units + 1), n_periods)
    periods = np.tile(np.arange(1, n_periods + 1), n_units)
    unit_effect = rng.normal(10, 3, n_units)[units - 1]
    time_effect = np.cumsum(rng.normal(0.5, 1.0, n_periods))[periods - 1]
    treat = (np.isin(units, treated_units) & (periods >= onset)).astype(int)
    df = pd.DataFrame(
        {
            "unit": units,
            "period": periods,
            "treat": treat,
            "potential": (periods >= onset).astype(int),
            "pop": (100.0 * units + periods).astype(float),
        }
    )
    df["y"] = unit_effect + time_effect + effect * treat + rng.normal(0.0, noise, len(df))
    return df


@pytest.fixture
def panel_factory():
    """Builder of two-way panels with custom size, treated units and noise."""
    return make_two_way_panel


@pytest.fixture
def two_way_panel() -> pd.DataFrame:
    """Noiseless 8 x 6 panel, units 1 and 2 treated from period 4 with effect 1.5."""
    return make_two_way_panel()


@pytest.fixture
def state_panel() -> pd.DataFrame:
    """10 states x 5 years, state 0 treated from year 3 with a +2 jump plus small noise."""
    rng = np.random.default_rng(2024)
    states = np.repeat(np.arange(10), 5)
    years = np.tile(np.arange(1, 6), 10)
    treat = ((states == 0) & (years >= 3)).astype(int)
    df = pd.DataFrame(
        {
            "state": states,
            "year": years,
            "treat": treat,
            "post": (years >= 3).astype(int),
            "pop": np.repeat(rng.uniform(1.0, 5.0, 10), 5),
        }
    )
    df["y"] = (
        rng.normal(0.0, 2.0, 10)[states]
        + 0.4 * years
        + 2.0 * treat
        + rng.normal(0.0, 0.1, len(df))
    )
    return df


@pytest.fixture
def group_panel() -> pd.DataFrame:
    """
    Individual-level triple-difference panel: 8 states x 4 years x 2 groups,
    3 individuals per cell. State 0 is treated from year 3 in group 1 only.
    """
    rng = np.random.default_rng(7)
    rows = []
    for state in range(8):
        state_level = rng.normal(0.0, 1.0)
        for year in range(1, 5):
            unemp = rng.uniform(3.0, 8.0)
            for qc in (0, 1):
                for _ in range(3):
                    rows.append(
                        {
                            "state": state,
                            "year": year,
                            "qc": qc,
                            "unemp": unemp,
                            "age": rng.uniform(20.0, 50.0),
                            "weight": rng.uniform(0.5, 2.0),
                            "base": state_level + 0.2 * year + 0.5 * qc,
                        }
                    )
    df = pd.DataFrame(rows)
    df["potential"] = ((df["year"] >= 3) & (df["qc"] == 1)).astype(int)
    df["treat"] = ((df["state"] == 0) & (df["potential"] == 1)).astype(int)
    df["y"] = df["base"] + 0.8 * df["treat"] + 0.01 * df["age"] + rng.normal(0.0, 0.3, len(df))
    return df.drop(columns="base")
