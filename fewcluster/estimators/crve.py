import pandas as pd
from scipy import stats

from ..utils.regutils import regression_from_spec
from ..exceptions import RegressionSingularityError
from ..config_models import CRVEResults, RegressionSpec


def cluster_robust_estimate(df: pd.DataFrame, spec: RegressionSpec) -> CRVEResults:
    """
    Conventional cluster-robust estimate of the treatment coefficient.

    Parameters
    ----------
    df : pd.DataFrame
        Panel data.
    spec : RegressionSpec
        Regression specification.

    Returns
    -------
    CRVEResults
        Coefficient, CRV1 standard error, t statistic and a two-sided p-value
        from the Student-t distribution with G - 1 degrees of freedom (G the
        number of clusters), together with N and G.

    Raises
    ------
    RegressionSingularityError
        If the treatment is collinear with the absorbed fixed effects; the
        message names the specification.
    """
    try:
        fit = regression_from_spec(df, spec).fit()
    except RegressionSingularityError as e:
        raise RegressionSingularityError(f"Specification '{spec.name}': {e}") from e

    dof = fit.n_clusters - 1
    tstat = fit.tstat[spec.treatment]
    return CRVEResults(
        specification=spec.name,
        coef=fit.coef[spec.treatment],
        se=fit.se[spec.treatment],
        tstat=tstat,
        p_value=float(2 * stats.t.sf(abs(tstat), dof)),
        df=dof,
        nobs=fit.nobs,
        n_clusters=fit.n_clusters,
    )
