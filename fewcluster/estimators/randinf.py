import time
import pandas as pd
from concurrent.futures import ThreadPoolExecutor
import numpy as np
from typing import Any, List, Optional, Tuple
import pydantic # For ValidationError

from ..utils.regutils import AbsorbingRegression, regression_from_spec
from ..utils.riutils import (
    placebo_clusters,
    placebo_treatment,
    validate_assignment,
    rademacher,
    wild_outcome,
    randomization_pvalue,
    bootstrap_pvalue,
)
from ..utils.bootutils import DROPPABLE_DRAW_ERRORS, draw_rng, run_draws
from ..exceptions import (
    FewClusterError,
    FewClusterDataError,
    FewClusterEstimationError,
    RegressionSingularityError,
)
from ..config_models import (
    DrawResults,
    DrawSummary,
    RandomizationInferenceConfig,
    RandomizationInferenceResults,
    RegressionSpec,
)

# Sub-seed stream of the wild bootstrap draws.
RI_STREAM = 1
PLACEBO_COLUMN = "_placebo_treatment"


class RandomizationInferenceEngine:
    """
    Randomization inference over placebo treated clusters with a restricted
    wild cluster bootstrap inside each placebo assignment.

    Assignment j = 0 is the actual treatment; j = 1..n move the treatment to
    each never-treated cluster in turn (for the observations flagged by the
    potential-treatment indicator). Under every assignment, B synthetic
    outcomes ``fitted + v * eta`` are built from the regression without the
    treatment (eta its residuals, v a Rademacher sign per cluster) and refitted
    on that assignment's treatment. The actual coefficient and t statistic are
    ranked against the pooled (n + 1) x B draws.

    Attributes
    ----------
    config : RandomizationInferenceConfig
        The configuration object holding all parameters for the estimator.
    df : pd.DataFrame
        Input panel. Never modified.
    spec : RegressionSpec
        Regression specification.
    potential_treatment : str
        Indicator of observations treated when their cluster is.
    B : int
        Wild bootstrap draws per assignment.
    """

    def __init__(self, config: RandomizationInferenceConfig) -> None:
        if isinstance(config, dict):
            config = RandomizationInferenceConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.spec: RegressionSpec = config.spec
        self.potential_treatment: str = config.potential_treatment
        self.B: int = config.B
        self.seed: int = config.seed
        self.n_jobs: int = config.n_jobs
        self.max_time: Optional[float] = config.max_time

    def run(self) -> Tuple[float, float]:
        """Return ``(p_t, p_beta)``."""
        results = self.fit()
        return results.p_t, results.p_beta

    def _assignment_design(self, base: pd.DataFrame, placebo: Any) -> AbsorbingRegression:
        """Regression design of one assignment; `placebo` None means the actual treatment."""
        if placebo is None:
            return regression_from_spec(base, self.spec)
        work = base.assign(**{PLACEBO_COLUMN: placebo_treatment(base, self.spec.cluster, self.potential_treatment, placebo)})
        return regression_from_spec(work, self.spec, treatment=PLACEBO_COLUMN)

    def _wild_draws(
        self,
        j: int,
        design: AbsorbingRegression,
        fitted: np.ndarray,
        resid: np.ndarray,
        groups: np.ndarray,
        n_clusters: int,
        max_time: Optional[float],
        executor: Optional[ThreadPoolExecutor],
    ) -> DrawResults:
        treatment = design.regressors[0]

        def one_draw(b: int) -> np.ndarray:
            signs = rademacher(draw_rng(self.seed, RI_STREAM, j, b), n_clusters)
            fit = design.fit(wild_outcome(fitted, resid, groups, signs))
            return np.array([fit.coef[treatment], fit.tstat[treatment]])

        return run_draws(one_draw, self.B, n_jobs=self.n_jobs, max_time=max_time, executor=executor)

    def fit(self) -> RandomizationInferenceResults:
        """
        Run randomization inference.

        Returns
        -------
        RandomizationInferenceResults
            - beta, tstat : actual coefficient and t statistic.
            - p_beta, p_t : share of the valid draws over all assignments,
              the actual one included, with ``|stat*| >= |stat|``; never
              below one over the number of valid draws.
            - p_wild_cluster_bootstrap : share of actual-assignment draws with
              ``|t*| >= |t|``.
            - null_betas, null_tstats, placebo_index : the valid draws.
            - draws, wild_draws : accounting over all assignments and over
              the actual assignment alone.

        Raises
        ------
        RegressionSingularityError
            If the treatment is collinear with the absorbed effects in the
            actual fit. Singular placebo fits only drop their draws.
        InsufficientClustersError
            If no cluster is never treated.
        """
        spec = self.spec
        try:
            validate_assignment(self.df, spec.cluster, spec.treatment, self.potential_treatment, spec.weight)

            try:
                actual_fit = regression_from_spec(self.df, spec).fit()
            except RegressionSingularityError as e:
                raise RegressionSingularityError(f"Specification '{spec.name}': {e}") from e
            beta = actual_fit.coef[spec.treatment]
            tstat = actual_fit.tstat[spec.treatment]

            null_model = regression_from_spec(self.df, spec, include_treatment=False)
            null_fit = null_model.fit()
            base = self.df.loc[null_fit.index]
            groups = null_model.groups
            n_clusters = int(null_model.n_clusters)

            placebos = placebo_clusters(base, spec.cluster, spec.treatment)
            assignments: List[Optional[Any]] = [None] + placebos

            deadline = None if self.max_time is None else time.monotonic() + self.max_time
            betas: List[np.ndarray] = []
            tstats: List[np.ndarray] = []
            index: List[np.ndarray] = []
            draws = DrawSummary()
            wild_draws = DrawSummary()
            executor = ThreadPoolExecutor(max_workers=self.n_jobs) if self.n_jobs > 1 else None
            try:
                for j, placebo in enumerate(assignments):
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        summary = DrawSummary(n_requested=self.B, n_unfinished=self.B)
                    else:
                        try:
                            design = self._assignment_design(base, placebo)
                        except DROPPABLE_DRAW_ERRORS:
                            if placebo is None:
                                raise
                            design = None
                        if design is None:
                            summary = DrawSummary(n_requested=self.B, n_dropped=self.B)
                        else:
                            result = self._wild_draws(
                                j, design, null_fit.fitted, null_fit.resid, groups, n_clusters, remaining, executor
                            )
                            summary = result.summary
                            if summary.n_valid:
                                betas.append(result.statistics[:, 0])
                                tstats.append(result.statistics[:, 1])
                                index.append(np.full(summary.n_valid, j, dtype=int))
                    draws = draws + summary
                    if j == 0:
                        wild_draws = summary
            finally:
                # Draws still running at the deadline finish before fit returns
                if executor is not None:
                    executor.shutdown(wait=True, cancel_futures=True)

            if draws.n_valid == 0:
                raise FewClusterEstimationError(
                    f"All {draws.n_requested} randomization inference draws failed or did not finish."
                )
            null_betas = np.concatenate(betas)
            null_tstats = np.concatenate(tstats)
            placebo_index = np.concatenate(index)

            results = RandomizationInferenceResults(
                beta=beta,
                tstat=tstat,
                p_beta=randomization_pvalue(null_betas, beta),
                p_t=randomization_pvalue(null_tstats, tstat),
                p_wild_cluster_bootstrap=bootstrap_pvalue(null_tstats[placebo_index == 0], tstat),
                placebo_clusters=placebos,
                null_betas=null_betas,
                null_tstats=null_tstats,
                placebo_index=placebo_index,
                draws=draws,
                wild_draws=wild_draws,
            )

        except FewClusterError:
            raise
        except pydantic.ValidationError as e_val:
            raise FewClusterEstimationError(f"Error validating randomization inference results: {e_val}") from e_val
        except KeyError as e_key:
            raise FewClusterDataError(f"Missing expected key during randomization inference: {e_key}") from e_key
        except ValueError as e_val_general:
            raise FewClusterDataError(f"ValueError during randomization inference: {e_val_general}") from e_val_general
        except np.linalg.LinAlgError as e_linalg:
            raise FewClusterEstimationError(f"Linear algebra error in randomization inference: {e_linalg}") from e_linalg

        return results
