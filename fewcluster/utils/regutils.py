import numpy as np
import pandas as pd
import statsmodels.api as sm
from typing import List, Optional, Sequence, Union

from fewcluster.exceptions import (
    FewClusterDataError,
    InsufficientClustersError,
    RegressionSingularityError,
)
from fewcluster.config_models import RegressionResults, RegressionSpec
from fewcluster.utils.datautils import split_term

_COLLINEARITY_TOL = 1e-8


def _build_exog(data: pd.DataFrame, regressors: Sequence[str], absorb: Sequence[str]) -> pd.DataFrame:
    """Design matrix: constant, explicit regressors, then one dummy block per absorbed term."""
    blocks: List[Union[pd.Series, pd.DataFrame]] = [pd.Series(1.0, index=data.index, name="const")]
    for term in regressors:
        parts = split_term(term)
        column = data[parts[0]].astype(float)
        for part in parts[1:]:
            column = column * data[part].astype(float)
        blocks.append(column.rename(term))
    for term in absorb:
        codes = data.groupby(split_term(term), sort=True).ngroup()
        # drop_first removes the level absorbed by the constant; remaining overlap between
        # blocks is resolved by the pseudo-inverse in the least-squares solve.
        blocks.append(pd.get_dummies(codes, prefix=term, drop_first=True, dtype=float))
    return pd.concat(blocks, axis=1)


class AbsorbingRegression:
    """
    Linear regression with absorbed fixed effects, analysis weights and a
    cluster-robust (CRV1) covariance.

    The design (regressors, fixed-effect dummies, weights, clusters) is built
    once; `fit` can then be called repeatedly with alternative outcome vectors,
    which is how the wild bootstrap refits synthetic outcomes.

    Parameters
    ----------
    df : pd.DataFrame
        Panel data. Not modified.
    outcome : str
        Outcome column used when `fit` is called without `y`.
    regressors : Sequence[str]
        Explicit regressors. ``"a:b"`` denotes the product of columns a and b.
    absorb : Sequence[str]
        Absorbed terms in fixest notation (``"state"``, ``"state^year"``).
    weight : Optional[str]
        Analysis weight column (weighted least squares).
    cluster : Optional[str]
        Cluster column. Without it a heteroskedasticity-robust (HC1)
        covariance is used.
    check : Optional[Sequence[str]]
        Regressors that must be identified. Defaults to all regressors.

    Raises
    ------
    FewClusterDataError
        If a referenced column is missing or no complete rows remain.
    InsufficientClustersError
        If fewer than two clusters remain.
    RegressionSingularityError
        If a checked regressor is collinear with the rest of the design.
    """

    def __init__(
        self,
        df: pd.DataFrame,
        outcome: str,
        regressors: Sequence[str],
        absorb: Sequence[str] = (),
        weight: Optional[str] = None,
        cluster: Optional[str] = None,
        check: Optional[Sequence[str]] = None,
    ) -> None:
        self.outcome = outcome
        self.regressors: List[str] = list(regressors)
        self.absorb: List[str] = list(absorb)
        self.weight = weight
        self.cluster = cluster

        used_columns: List[str] = [outcome]
        for term in self.regressors + self.absorb:
            used_columns.extend(split_term(term))
        used_columns += [c for c in (weight, cluster) if c is not None]
        used_columns = list(dict.fromkeys(used_columns))
        missing = set(used_columns) - set(df.columns)
        if missing:
            raise FewClusterDataError(f"Regression columns not found in DataFrame: {', '.join(sorted(missing))}")

        # Listwise deletion, as in any regression command.
        complete = df[used_columns].notna().all(axis=1)
        data = df.loc[complete]
        if data.empty:
            raise FewClusterDataError("No complete observations remain for the regression.")
        self.index: pd.Index = data.index

        exog_frame = _build_exog(data, self.regressors, self.absorb)
        self.exog_names: List[str] = [str(c) for c in exog_frame.columns]
        self.exog: np.ndarray = exog_frame.to_numpy(dtype=float)
        self.endog: np.ndarray = data[outcome].to_numpy(dtype=float)
        self.weights: Optional[np.ndarray] = data[weight].to_numpy(dtype=float) if weight is not None else None

        self.groups: Optional[np.ndarray] = None
        self.n_clusters: Optional[int] = None
        if cluster is not None:
            self.groups = pd.factorize(data[cluster], sort=True)[0]
            self.n_clusters = int(self.groups.max()) + 1
            if self.n_clusters < 2:
                raise InsufficientClustersError(
                    f"Cluster-robust inference needs at least two clusters; found {self.n_clusters}."
                )

        self._check_identification(self.regressors if check is None else list(check))

    def _check_identification(self, terms: Sequence[str]) -> None:
        """Raise if a term lies (numerically) in the span of the other design columns."""
        root_w = np.sqrt(self.weights) if self.weights is not None else np.ones(self.exog.shape[0])
        wexog = self.exog * root_w[:, None]
        for term in terms:
            j = self.exog_names.index(term)
            target = wexog[:, j]
            others = np.delete(wexog, j, axis=1)
            coef, *_ = np.linalg.lstsq(others, target, rcond=None)
            remainder = target - others @ coef
            scale = np.linalg.norm(target)
            if scale == 0.0 or np.linalg.norm(remainder) <= _COLLINEARITY_TOL * scale:
                raise RegressionSingularityError(
                    f"Regressor '{term}' is collinear with the absorbed fixed effects "
                    f"({' + '.join(self.absorb) or 'none'}) and the other regressors."
                )

    @property
    def nobs(self) -> int:
        return int(self.exog.shape[0])

    def fit(self, y: Optional[np.ndarray] = None) -> RegressionResults:
        """
        Fit the model on the stored outcome or on `y`.

        Parameters
        ----------
        y : Optional[np.ndarray]
            Alternative outcome aligned with `self.index` (length `nobs`).

        Returns
        -------
        RegressionResults
            Coefficients, standard errors and t statistics of the explicit
            regressors, residuals and fitted values (absorbed effects
            included), N, residual degrees of freedom and cluster count.
        """
        endog = self.endog if y is None else np.asarray(y, dtype=float)
        if endog.shape != (self.nobs,):
            raise FewClusterDataError(f"Outcome vector has shape {endog.shape}; expected ({self.nobs},).")

        model = sm.WLS(endog, self.exog, weights=self.weights if self.weights is not None else 1.0)
        if self.groups is not None:
            results = model.fit(cov_type="cluster", cov_kwds={"groups": self.groups})
        else:
            results = model.fit(cov_type="HC1")

        params = np.asarray(results.params)
        bse = np.asarray(results.bse)
        tvalues = np.asarray(results.tvalues)
        positions = {name: self.exog_names.index(name) for name in self.regressors}
        return RegressionResults(
            coef={name: float(params[j]) for name, j in positions.items()},
            se={name: float(bse[j]) for name, j in positions.items()},
            tstat={name: float(tvalues[j]) for name, j in positions.items()},
            resid=np.asarray(results.resid, dtype=float),
            fitted=np.asarray(results.fittedvalues, dtype=float),
            index=self.index,
            nobs=self.nobs,
            df_resid=int(round(results.df_resid)),
            n_clusters=self.n_clusters,
        )


def fit_absorbing_regression(
    df: pd.DataFrame,
    outcome: str,
    regressors: Sequence[str],
    absorb: Sequence[str] = (),
    weight: Optional[str] = None,
    cluster: Optional[str] = None,
) -> RegressionResults:
    """One-shot form of `AbsorbingRegression`."""
    return AbsorbingRegression(df, outcome, regressors, absorb, weight, cluster).fit()


def regression_from_spec(
    df: pd.DataFrame,
    spec: RegressionSpec,
    include_treatment: bool = True,
    treatment: Optional[str] = None,
    outcome: Optional[str] = None,
) -> AbsorbingRegression:
    """Build the design of `spec`, optionally with a substitute treatment or without one."""
    return AbsorbingRegression(
        df,
        outcome=outcome or spec.outcome,
        regressors=spec.regressors(include_treatment=include_treatment, treatment=treatment),
        absorb=spec.absorb,
        weight=spec.weight,
        cluster=spec.cluster,
    )
