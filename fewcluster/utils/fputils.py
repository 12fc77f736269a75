import warnings
import numpy as np
import pandas as pd
import statsmodels.api as sm
from typing import Optional, Tuple

from fewcluster.exceptions import FewClusterDataError, NegativePredictedVarianceWarning
from fewcluster.config_models import DrawResults, VarianceModelResults
from fewcluster.utils.bootutils import draw_rng, run_draws

_ETA = "_eta"
_POST = "_post"
_GROUP = "_group"
_W = "_w"


def cell_aggregates(
    df: pd.DataFrame,
    resid: pd.Series,
    cluster: str,
    time: str,
    post: pd.Series,
    group: Optional[str] = None,
    weight: Optional[str] = None,
) -> pd.DataFrame:
    """
    Collapse null-model residuals into cluster x time (x group) cells.

    Parameters
    ----------
    df : pd.DataFrame
        Panel; only the rows in ``resid.index`` are used.
    resid : pd.Series
        Residuals of the regression without the treatment, indexed like `df`.
    cluster, time : str
        Column names.
    post : pd.Series
        Post-period indicator indexed like `df`.
    group : Optional[str]
        Group indicator; rows with value 1 form the treated-eligible group.
    weight : Optional[str]
        Analysis weight column; unit weights when None.

    Returns
    -------
    pd.DataFrame
        One row per cell with the cluster, time, post and group keys and
        ``eta_bar`` (weighted mean residual), ``P`` (total weight),
        ``P2`` (sum of squared weights) and ``Pr`` (share of the cell in its
        cluster x post x group block).
    """
    rows = resid.index
    data = pd.DataFrame(
        {
            cluster: df.loc[rows, cluster].to_numpy(),
            time: df.loc[rows, time].to_numpy(),
            _POST: post.loc[rows].to_numpy().astype(int),
            _GROUP: (df.loc[rows, group] == 1).astype(int).to_numpy() if group is not None else 0,
            _W: df.loc[rows, weight].to_numpy(dtype=float) if weight is not None else 1.0,
            _ETA: resid.to_numpy(dtype=float),
        }
    )
    data = data.loc[data[_W] > 0]
    if data.empty:
        raise FewClusterDataError("No observations with positive weight remain for the block bootstrap.")

    data["_weta"] = data[_W] * data[_ETA]
    data["_w2"] = data[_W] ** 2
    cells = (
        data.groupby([cluster, time, _POST, _GROUP], sort=True)[[_W, "_w2", "_weta"]]
        .sum()
        .reset_index()
        .rename(columns={_W: "P", "_w2": "P2"})
    )
    cells["eta_bar"] = cells.pop("_weta") / cells["P"]
    block_total = cells.groupby([cluster, _POST, _GROUP])["P"].transform("sum")
    cells["Pr"] = cells["P"] / block_total
    return cells


def cluster_contrasts(
    cells: pd.DataFrame, cluster: str, use_group: bool = True
) -> Tuple[pd.Series, pd.Series, pd.Series]:
    """
    Signed residual contrast W, scale proxy q and total weight P per cluster.

    With a group the contrast is the triple difference: +(post, group 1),
    -(pre, group 1), -(post, group 0), +(pre, group 0). Without one it is the
    difference-in-differences contrast +post, -pre.
    """
    post = cells[_POST].to_numpy() == 1
    if use_group:
        in_group = cells[_GROUP].to_numpy() == 1
        sign = np.where(in_group, np.where(post, 1.0, -1.0), np.where(post, -1.0, 1.0))
    else:
        sign = np.where(post, 1.0, -1.0)

    keys = cells[cluster]
    W = (sign * cells["Pr"] * cells["eta_bar"]).groupby(keys, sort=True).sum()
    q = (cells["Pr"] ** 2 * cells["P2"] / cells["P"] ** 2).groupby(keys, sort=True).sum()
    P = cells["P"].groupby(keys, sort=True).sum()
    return W.rename("W"), q.rename("q"), P.rename("P")


def fit_variance_model(W: pd.Series, q: pd.Series, P: pd.Series) -> VarianceModelResults:
    """
    Heteroskedasticity model var(W | q) = slope * q + intercept.

    Fitted by weighted least squares of W^2 on q with the cluster weights P.
    When the prediction is negative for any cluster the model falls back to
    ``var = 1`` if the slope is negative (branch ``"uniform"``), else to
    ``var = q`` (branch ``"proportional"``), and a
    `NegativePredictedVarianceWarning` is issued.
    """
    exog = sm.add_constant(q.to_numpy(dtype=float), has_constant="add")
    fit = sm.WLS(W.to_numpy(dtype=float) ** 2, exog, weights=P.to_numpy(dtype=float)).fit()
    intercept, slope = (float(v) for v in fit.params)

    predicted = slope * q + intercept
    branch = "fitted"
    variance = predicted
    if (predicted < 0).any():
        if slope < 0:
            branch, variance = "uniform", pd.Series(1.0, index=q.index)
        else:
            branch, variance = "proportional", q.astype(float)
        warnings.warn(
            f"Variance model predicts negative variance (slope={slope:.4g}, intercept={intercept:.4g}); "
            f"using the '{branch}' fallback.",
            NegativePredictedVarianceWarning,
        )
    return VarianceModelResults(slope=slope, intercept=intercept, branch=branch, variance=variance.rename("variance"))


def _contrast(values: np.ndarray, treated: np.ndarray, P: np.ndarray) -> float:
    control = ~treated
    return float(values[treated].mean() - np.average(values[control], weights=P[control]))


def block_bootstrap_pvalues(
    alpha: float,
    W: pd.Series,
    variance: pd.Series,
    treated: pd.Series,
    P: pd.Series,
    B: int,
    seed: int,
    n_jobs: int = 1,
    max_time: Optional[float] = None,
    stream: int = 0,
) -> Tuple[float, float, DrawResults]:
    """
    Uncorrected and heteroskedasticity-corrected block bootstrap p-values.

    Each draw keeps the positions of the clusters (and so their treated flags
    and weights) and fills them with contrasts drawn with replacement from
    all clusters. The corrected draw rescales a drawn contrast by
    ``sqrt(var_position / var_drawn)``. The statistic is the mean over treated
    positions minus the P-weighted mean over control positions; a p-value is
    the share of draws whose squared statistic is at least ``alpha ** 2``.

    Returns
    -------
    Tuple[float, float, DrawResults]
        ``p_uncorrected``, ``p_corrected`` and the draws, whose statistics
        have shape (n_valid, 2) with the uncorrected statistic first.
    """
    W_values = W.to_numpy(dtype=float)
    scale = np.sqrt(variance.reindex(W.index).to_numpy(dtype=float))
    is_treated = treated.reindex(W.index, fill_value=False).to_numpy(dtype=bool)
    weights = P.reindex(W.index).to_numpy(dtype=float)
    if not is_treated.any() or is_treated.all():
        raise FewClusterDataError("The block bootstrap needs both treated and control clusters.")

    n_clusters = len(W_values)

    def one_draw(b: int) -> np.ndarray:
        rng = draw_rng(seed, stream, b)
        drawn = rng.integers(0, n_clusters, size=n_clusters)
        uncorrected = W_values[drawn]
        with np.errstate(divide="ignore", invalid="ignore"):
            corrected = uncorrected / scale[drawn] * scale
        return np.array([_contrast(uncorrected, is_treated, weights), _contrast(corrected, is_treated, weights)])

    draws = run_draws(one_draw, B, n_jobs=n_jobs, max_time=max_time)
    if draws.summary.n_valid == 0:
        return np.nan, np.nan, draws
    threshold = alpha ** 2
    p_uncorrected = float(np.mean(draws.statistics[:, 0] ** 2 >= threshold))
    p_corrected = float(np.mean(draws.statistics[:, 1] ** 2 >= threshold))
    return p_uncorrected, p_corrected, draws
