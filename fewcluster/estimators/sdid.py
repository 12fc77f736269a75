import warnings
import pandas as pd
import numpy as np
from typing import List, Optional, Tuple
import pydantic # For ValidationError
import cvxpy # For cvxpy.error types

from ..utils.datautils import validate_panel
from ..utils.sdidutils import aggregate_sdid
from ..utils.bootutils import run_cluster_bootstrap, bootstrap_standard_error
from ..exceptions import (
    FewClusterError,
    FewClusterDataError,
    FewClusterEstimationError,
)
from ..config_models import SDIDConfig, SDIDResults, DrawSummary


class SyntheticDIDAggregator:
    """
    Population-weighted Synthetic Difference-in-Differences.

    Every ever-treated unit is fitted separately against the never-treated
    units with the SDID estimator. The unit-level ATTs are combined into one
    estimate, each weighted by the unit's weight in its first observed period
    (a population-size proxy; deliberately not a pre-period average). The
    standard error is the standard deviation of the aggregate over a cluster
    bootstrap that resamples whole units.

    Attributes
    ----------
    config : SDIDConfig
        The configuration object holding all parameters for the estimator.
    df : pd.DataFrame
        The input panel. Never modified.
    outcome, treat, unitid, time : str
        Column names.
    weight : Optional[str]
        Weight column; None gives every treated unit equal weight.
    covariates : Optional[List[str]]
        Covariates projected out of the outcome, used when `use_covariates`.
    B : int
        Number of bootstrap draws; 0 skips the standard error.
    """

    def __init__(self, config: SDIDConfig) -> None:
        if isinstance(config, dict):
            config = SDIDConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.outcome: str = config.outcome
        self.treat: str = config.treat
        self.unitid: str = config.unitid
        self.time: str = config.time
        self.weight: Optional[str] = config.weight
        self.covariates: Optional[List[str]] = config.covariates if config.use_covariates else None
        self.B: int = config.B
        self.seed: int = config.seed
        self.n_jobs: int = config.n_jobs
        self.max_time: Optional[float] = config.max_time

    def _aggregate(self, panel: pd.DataFrame) -> float:
        # Unit exclusions inside a bootstrap draw are expected and not reported.
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", UserWarning)
            att, _, _ = aggregate_sdid(
                panel, self.outcome, self.unitid, self.time, self.treat, self.weight, self.covariates
            )
        return att

    def estimate(self) -> Tuple[float, Optional[float]]:
        """Return ``(att, se)``; see `fit` for the full results."""
        results = self.fit()
        return results.att, results.se

    def fit(self) -> SDIDResults:
        """
        Fit the aggregate SDID estimate and its bootstrap standard error.

        Returns
        -------
        SDIDResults
            - att : weight-weighted mean of the included unit ATTs.
            - se : standard deviation of the bootstrap aggregates, None when
              fewer than two bootstrap draws are valid or B is 0.
            - unit_effects : (unit, att, weight) of every included unit.
            - excluded_units : treated units whose ATT or weight was undefined.
            - bootstrap_atts, draws : the valid bootstrap aggregates and the
              draw accounting.

        Raises
        ------
        NoTreatedUnitsError
            If the panel has no ever-treated unit.
        AggregationFailedError
            If every treated unit is excluded.
        FewClusterDataError
            For invalid panels.
        """
        try:
            validate_panel(self.df, self.unitid, self.time, self.treat, self.weight)

            att, unit_effects, excluded_units = aggregate_sdid(
                self.df, self.outcome, self.unitid, self.time, self.treat, self.weight, self.covariates
            )

            bootstrap_atts = np.empty(0)
            se: Optional[float] = None
            draws = DrawSummary()
            if self.B > 0:
                # Bootstrap draws with no treated or no control unit are dropped, not zeroed.
                bootstrap = run_cluster_bootstrap(
                    self.df,
                    self.unitid,
                    self._aggregate,
                    B=self.B,
                    seed=self.seed,
                    treat_col=self.treat,
                    n_jobs=self.n_jobs,
                    max_time=self.max_time,
                )
                bootstrap_atts = bootstrap.statistics
                se = bootstrap_standard_error(bootstrap_atts)
                draws = bootstrap.summary

            results = SDIDResults(
                att=att,
                se=se,
                unit_effects=unit_effects,
                excluded_units=excluded_units,
                bootstrap_atts=bootstrap_atts,
                parameters_used=self.config.model_dump(exclude={'df'}),
                draws=draws,
            )

        except FewClusterError:
            raise
        except pydantic.ValidationError as e_val:
            raise FewClusterEstimationError(f"Error validating SDID results: {e_val}") from e_val
        except (cvxpy.error.SolverError, cvxpy.error.DCPError) as e_cvx:
            raise FewClusterEstimationError(f"CVXPY solver error in SDID: {e_cvx}") from e_cvx
        except KeyError as e_key:
            raise FewClusterDataError(f"Missing expected key during SDID data processing: {e_key}") from e_key
        except ValueError as e_val_general:
            raise FewClusterDataError(f"ValueError during SDID processing: {e_val_general}") from e_val_general
        except np.linalg.LinAlgError as e_linalg:
            raise FewClusterEstimationError(f"Linear algebra error in SDID: {e_linalg}") from e_linalg

        return results
