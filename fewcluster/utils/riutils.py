import numpy as np
import pandas as pd
from typing import Any, List, Optional

from fewcluster.exceptions import FewClusterDataError, InsufficientClustersError
from fewcluster.utils.datautils import check_indicator


def placebo_clusters(df: pd.DataFrame, cluster: str, treat: str) -> List[Any]:
    """Never-treated clusters in sorted order; each serves as one placebo assignment.

    Raises
    ------
    InsufficientClustersError
        If every cluster is treated at some point.
    """
    ever_treated = df.groupby(cluster, sort=True)[treat].max() > 0
    placebos = ever_treated.index[~ever_treated].tolist()
    if not placebos:
        raise InsufficientClustersError("Randomization inference needs at least one never-treated cluster.")
    return placebos


def placebo_treatment(df: pd.DataFrame, cluster: str, potential: str, placebo: Any) -> pd.Series:
    """Treatment the panel would have if `placebo` were the treated cluster."""
    return ((df[cluster] == placebo) & (df[potential] == 1)).astype(int)


def validate_assignment(
    df: pd.DataFrame, cluster: str, treat: str, potential: str, weight: Optional[str] = None
) -> None:
    """Check the columns that define actual and placebo assignments."""
    if df[cluster].isna().any():
        raise FewClusterDataError(f"Cluster column '{cluster}' contains missing values.")
    check_indicator(df, treat)
    check_indicator(df, potential)
    if weight is not None and (df[weight] < 0).any():
        raise FewClusterDataError(f"Weight column '{weight}' contains negative values.")


def rademacher(rng: np.random.Generator, n_clusters: int) -> np.ndarray:
    """One +1/-1 sign per cluster, equally likely."""
    return rng.choice(np.array([-1.0, 1.0]), size=n_clusters)


def wild_outcome(fitted: np.ndarray, resid: np.ndarray, groups: np.ndarray, signs: np.ndarray) -> np.ndarray:
    """Synthetic outcome ``fitted + v_g * resid``; every row of a cluster shares its sign."""
    return fitted + signs[groups] * resid


def randomization_pvalue(null_statistics: np.ndarray, observed: float) -> float:
    """Share of the finite null statistics with ``|s| >= |observed|``, floored at ``1 / n``.

    The null statistics already include the draws of the actual assignment,
    so the observed value is not counted a second time.
    """
    values = np.asarray(null_statistics, dtype=float)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return 1.0
    share = np.mean(np.abs(values) >= abs(observed))
    return float(max(share, 1.0 / values.size))


def bootstrap_pvalue(null_statistics: np.ndarray, observed: float) -> Optional[float]:
    """Share of finite draws with ``|s| >= |observed|``; None without draws."""
    values = np.asarray(null_statistics, dtype=float)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return None
    return float(np.mean(np.abs(values) >= abs(observed)))
