import pandas as pd
import numpy as np
from typing import Optional
import pydantic # For ValidationError

from ..utils.datautils import validate_panel, treatment_assignment, post_indicator
from ..utils.regutils import regression_from_spec
from ..utils.fputils import (
    cell_aggregates,
    cluster_contrasts,
    fit_variance_model,
    block_bootstrap_pvalues,
)
from ..exceptions import (
    FewClusterError,
    FewClusterDataError,
    FewClusterEstimationError,
    RegressionSingularityError,
)
from ..config_models import BlockBootstrapConfig, BlockBootstrapResults, RegressionSpec

# Sub-seed stream of the block bootstrap draws.
FP_STREAM = 2


class BlockBootstrapCorrector:
    """
    Ferman-Pinto (2019) block bootstrap with a heteroskedasticity correction.

    With few treated clusters the residual contrast of a cluster is more
    variable the fewer (or more unequally weighted) observations it holds.
    The corrector models that variance as a linear function of a scale proxy
    q and rescales bootstrapped contrasts to the variance of the position they
    fill.

    Procedure:

    1. Full regression, giving the treatment coefficient alpha.
    2. Regression without the treatment, giving residuals eta.
    3. Residuals are averaged into cluster x time x group cells and combined
       into one signed contrast W per cluster.
    4. var(W | q) is fitted by weighted least squares, with a fallback when
       the prediction turns negative.
    5. Bootstrap contrasts are compared with alpha.

    Attributes
    ----------
    config : BlockBootstrapConfig
        The configuration object holding all parameters for the estimator.
    df : pd.DataFrame
        Input panel. Never modified.
    spec : RegressionSpec
        Regression specification (outcome, treatment, absorbed effects,
        controls, cluster, group and weight).
    time : str
        Time period column; defines the post period.
    B : int
        Number of bootstrap draws.
    """

    def __init__(self, config: BlockBootstrapConfig) -> None:
        if isinstance(config, dict):
            config = BlockBootstrapConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.spec: RegressionSpec = config.spec
        self.time: str = config.time
        self.B: int = config.B
        self.seed: int = config.seed
        self.n_jobs: int = config.n_jobs
        self.max_time: Optional[float] = config.max_time

    def run(self):
        """Return ``(p_uncorrected, p_corrected)``."""
        results = self.fit()
        return results.p_uncorrected, results.p_corrected

    def fit(self) -> BlockBootstrapResults:
        """
        Run the block bootstrap.

        Returns
        -------
        BlockBootstrapResults
            alpha, both p-values, the per-cluster contrasts and scale proxies,
            the variance model (including the fallback branch applied), the
            bootstrap statistics and draw counts.

        Raises
        ------
        RegressionSingularityError
            If the treatment is collinear with the absorbed fixed effects.
        FewClusterDataError
            For invalid panels, or when all clusters are treated (or none).
        """
        spec = self.spec
        try:
            validate_panel(self.df, spec.cluster, self.time, spec.treatment, spec.weight)

            try:
                full_fit = regression_from_spec(self.df, spec).fit()
            except RegressionSingularityError as e:
                raise RegressionSingularityError(f"Specification '{spec.name}': {e}") from e
            alpha = full_fit.coef[spec.treatment]

            null_fit = regression_from_spec(self.df, spec, include_treatment=False).fit()
            resid = pd.Series(null_fit.resid, index=null_fit.index)

            post = post_indicator(self.df, spec.cluster, self.time, spec.treatment)
            cells = cell_aggregates(self.df, resid, spec.cluster, self.time, post, spec.group, spec.weight)
            W, q, P = cluster_contrasts(cells, spec.cluster, use_group=spec.group is not None)
            variance_model = fit_variance_model(W, q, P)

            treated = treatment_assignment(self.df, spec.cluster, self.time, spec.treatment)["ever_treated"]
            p_uncorrected, p_corrected, draws = block_bootstrap_pvalues(
                alpha,
                W,
                variance_model.variance,
                treated,
                P,
                B=self.B,
                seed=self.seed,
                n_jobs=self.n_jobs,
                max_time=self.max_time,
                stream=FP_STREAM,
            )

            statistics = draws.statistics.reshape(-1, 2)
            results = BlockBootstrapResults(
                alpha=alpha,
                p_uncorrected=p_uncorrected,
                p_corrected=p_corrected,
                cluster_contrasts=W,
                cluster_scale=q,
                variance_model=variance_model,
                bootstrap_uncorrected=statistics[:, 0],
                bootstrap_corrected=statistics[:, 1],
                draws=draws.summary,
            )

        except FewClusterError:
            raise
        except pydantic.ValidationError as e_val:
            raise FewClusterEstimationError(f"Error validating block bootstrap results: {e_val}") from e_val
        except KeyError as e_key:
            raise FewClusterDataError(f"Missing expected key during block bootstrap: {e_key}") from e_key
        except ValueError as e_val_general:
            raise FewClusterDataError(f"ValueError during block bootstrap: {e_val_general}") from e_val_general
        except np.linalg.LinAlgError as e_linalg:
            raise FewClusterEstimationError(f"Linear algebra error in block bootstrap: {e_linalg}") from e_linalg

        return results
