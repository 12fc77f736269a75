from typing import List, Optional, Any, Dict, Literal, Tuple
import pandas as pd
import numpy as np
from pydantic import BaseModel, Field, model_validator

from fewcluster.exceptions import FewClusterDataError, FewClusterConfigError
from fewcluster.utils.datautils import parse_fe_spec, split_term


# --- Regression specification ---

class SpecificationTerms(BaseModel):
    """
    Enumerated optional terms of a regression specification.

    Each flag switches one block of regressors on. The blocks are assembled by
    `RegressionSpec.regressors`, never by string concatenation at call sites.
    """
    demographics: bool = Field(default=False, description="Include the demographic control variables.")
    unemployment_x_group: bool = Field(default=False, description="Include the unemployment rate interacted with the group indicator.")
    minwage_x_group: bool = Field(default=False, description="Include the minimum wage interacted with the group indicator.")

    class Config:
        extra = "forbid"
        frozen = True


class RegressionSpec(BaseModel):
    """
    Tagged, immutable description of one fixed-effects regression.

    `absorb` accepts either a list of fixest-style terms (``"state^year"``) or
    a single specification string (``"state^year + year^qc"``).
    """
    name: str = Field(default="baseline", description="Label used in reports.")
    outcome: str = Field(..., description="Outcome column.")
    treatment: str = Field(..., description="Treatment indicator column (the coefficient of interest).")
    cluster: str = Field(..., description="Cluster column for the robust variance and resampling.")
    absorb: List[str] = Field(default_factory=list, description="Absorbed fixed-effect terms.")
    controls: List[str] = Field(default_factory=list, description="Demographic control columns.")
    group: Optional[str] = Field(default=None, description="Group indicator for the triple difference (e.g. qualifying child).")
    weight: Optional[str] = Field(default=None, description="Analysis weight column.")
    unemployment: Optional[str] = Field(default=None, description="Unemployment rate column.")
    minwage: Optional[str] = Field(default=None, description="Minimum wage column.")
    terms: SpecificationTerms = Field(default_factory=SpecificationTerms)

    class Config:
        extra = "forbid"
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def _parse_absorb_string(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("absorb"), str):
            data = dict(data)
            data["absorb"] = parse_fe_spec(data["absorb"])
        return data

    @model_validator(mode="after")
    def check_terms(self) -> "RegressionSpec":
        if self.terms.demographics and not self.controls:
            raise FewClusterConfigError("'demographics' is enabled but no control columns were given.")
        if self.terms.unemployment_x_group and (self.unemployment is None or self.group is None):
            raise FewClusterConfigError("'unemployment_x_group' requires both 'unemployment' and 'group'.")
        if self.terms.minwage_x_group and (self.minwage is None or self.group is None):
            raise FewClusterConfigError("'minwage_x_group' requires both 'minwage' and 'group'.")
        return self

    def regressors(self, include_treatment: bool = True, treatment: Optional[str] = None) -> List[str]:
        """Return the regressor list, optionally with a substitute treatment column."""
        regressors: List[str] = []
        if include_treatment:
            regressors.append(treatment or self.treatment)
        if self.terms.demographics:
            regressors.extend(self.controls)
        if self.terms.unemployment_x_group:
            regressors.append(f"{self.unemployment}:{self.group}")
        if self.terms.minwage_x_group:
            regressors.append(f"{self.minwage}:{self.group}")
        return regressors

    def columns(self) -> List[str]:
        """All DataFrame columns the specification reads."""
        cols = [self.outcome, self.treatment, self.cluster]
        for term in self.regressors(include_treatment=False) + self.absorb:
            cols.extend(split_term(term))
        for extra in (self.group, self.weight):
            if extra is not None:
                cols.append(extra)
        return list(dict.fromkeys(cols))

    def with_outcome(self, outcome: str) -> "RegressionSpec":
        return self.model_copy(update={"outcome": outcome})


def standard_specifications(base: RegressionSpec) -> List[RegressionSpec]:
    """
    The four nested specifications reported for every outcome.

    1. fixed effects only; 2. + demographic controls; 3. + unemployment x group;
    4. + minimum wage x group. Terms whose columns are not configured are
    skipped, so a base without `minwage` yields three specifications.
    """
    specs = [base.model_copy(update={"name": "fe", "terms": SpecificationTerms()})]
    steps: List[Tuple[str, Dict[str, bool], bool]] = [
        ("demographics", {"demographics": True}, bool(base.controls)),
        ("unemployment", {"unemployment_x_group": True}, base.unemployment is not None and base.group is not None),
        ("minwage", {"minwage_x_group": True}, base.minwage is not None and base.group is not None),
    ]
    flags: Dict[str, bool] = {}
    for name, update, available in steps:
        if not available:
            continue
        flags.update(update)
        specs.append(base.model_copy(update={"name": name, "terms": SpecificationTerms(**flags)}))
    return specs


# --- Estimator configurations ---

class BaseEstimatorConfig(BaseModel):
    """
    Base Pydantic model for estimator configurations.
    Holds the panel and the resampling controls shared by every procedure.
    """
    df: pd.DataFrame = Field(..., description="Input panel data as a pandas DataFrame. Never modified.")
    seed: int = Field(default=1400, description="Global seed; every draw derives its own sub-seed from it.")
    n_jobs: int = Field(default=1, ge=1, description="Number of worker threads for draw loops.")
    max_time: Optional[float] = Field(default=None, gt=0, description="Wall-clock budget in seconds for a draw loop. Unfinished draws are discarded.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'

    def _require_columns(self, columns: List[str]) -> None:
        if self.df.empty:
            raise FewClusterDataError("Input DataFrame 'df' cannot be empty.")
        missing_columns = set(columns) - set(self.df.columns)
        if missing_columns:
            raise FewClusterDataError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )


class SDIDConfig(BaseEstimatorConfig):
    """Configuration for the population-weighted Synthetic DID aggregator."""
    outcome: str = Field(..., description="Name of the outcome variable column.")
    treat: str = Field(..., description="Name of the treatment indicator column.")
    unitid: str = Field(..., description="Name of the unit identifier column (also the bootstrap cluster).")
    time: str = Field(..., description="Name of the time period column.")
    weight: Optional[str] = Field(default=None, description="Weight column; the first-period value weights each unit's ATT.")
    covariates: Optional[List[str]] = Field(default=None, description="Covariates projected out of the outcome.")
    use_covariates: bool = Field(default=False, description="Whether to use `covariates`.")
    B: int = Field(default=50, ge=0, description="Number of cluster bootstrap draws for the standard error.")

    @model_validator(mode='after')
    def check_df_and_columns(self) -> "SDIDConfig":
        columns = [self.outcome, self.treat, self.unitid, self.time]
        if self.weight is not None:
            columns.append(self.weight)
        if self.use_covariates:
            if not self.covariates:
                raise FewClusterConfigError("'use_covariates' is True but no covariates were given.")
            columns.extend(self.covariates)
        self._require_columns(columns)
        return self


class RegressionInferenceConfig(BaseEstimatorConfig):
    """Shared configuration for procedures built on a fixed-effects regression."""
    spec: RegressionSpec = Field(..., description="Regression specification.")

    @model_validator(mode='after')
    def check_spec_columns(self) -> "RegressionInferenceConfig":
        self._require_columns(self.spec.columns())
        return self


class BlockBootstrapConfig(RegressionInferenceConfig):
    """Configuration for the Ferman-Pinto block bootstrap."""
    time: str = Field(..., description="Name of the time period column.")
    B: int = Field(default=999, ge=1, description="Number of bootstrap draws.")

    @model_validator(mode='after')
    def check_time_column(self) -> "BlockBootstrapConfig":
        self._require_columns([self.time])
        return self


class RandomizationInferenceConfig(RegressionInferenceConfig):
    """Configuration for randomization inference with nested wild cluster bootstrap."""
    potential_treatment: str = Field(..., description="Indicator of observations that would be treated if their cluster were.")
    B: int = Field(default=100, ge=1, description="Wild bootstrap draws per placebo assignment.")

    @model_validator(mode='after')
    def check_potential_column(self) -> "RandomizationInferenceConfig":
        self._require_columns([self.potential_treatment])
        return self


class StudyConfig(BaseEstimatorConfig):
    """
    Configuration for a full study: every outcome crossed with the standard
    specifications, each reported with all inference procedures.
    """
    outcomes: List[str] = Field(..., min_length=1, description="Outcome columns.")
    treatment: str = Field(..., description="Treatment indicator column.")
    cluster: str = Field(..., description="Cluster column.")
    time: str = Field(..., description="Time period column.")
    potential_treatment: str = Field(..., description="Potential treatment indicator for placebo assignment.")
    fe_spec: str = Field(default="", description="Fixed-effects specification string, e.g. 'state^year + year^qc'.")
    controls: List[str] = Field(default_factory=list, description="Demographic control columns.")
    group: Optional[str] = Field(default=None, description="Group indicator column.")
    weight: Optional[str] = Field(default=None, description="Analysis weight column.")
    unemployment: Optional[str] = Field(default=None, description="Unemployment rate column.")
    minwage: Optional[str] = Field(default=None, description="Minimum wage column.")
    specifications: Optional[List[str]] = Field(default=None, description="Subset of specification names to run.")
    year_range: Optional[Tuple[int, int]] = Field(default=None, description="Inclusive (start, end) restriction on the time column.")
    mode: Literal["production", "fast"] = Field(default="production", description="'fast' caps every draw count at `fast_draws`.")
    fast_draws: int = Field(default=10, ge=1)
    B: int = Field(default=50, ge=0, description="Cluster bootstrap draws for the SDID standard error.")
    B_ri: int = Field(default=100, ge=1, description="Wild bootstrap draws per placebo assignment.")
    B_fp: int = Field(default=999, ge=1, description="Ferman-Pinto bootstrap draws.")
    sdid_outcomes: List[str] = Field(default_factory=list, description="Outcomes also estimated by SDID.")

    @model_validator(mode='after')
    def check_study(self) -> "StudyConfig":
        columns = list(self.outcomes) + [self.treatment, self.cluster, self.time, self.potential_treatment]
        columns += [c for c in (self.group, self.weight, self.unemployment, self.minwage) if c is not None]
        columns += list(self.controls) + list(self.sdid_outcomes)
        self._require_columns(columns)
        if self.year_range is not None and self.year_range[0] > self.year_range[1]:
            raise FewClusterConfigError("year_range start must be <= end.")
        return self

    def draws(self, requested: int) -> int:
        """Effective draw count under the configured mode."""
        return min(requested, self.fast_draws) if self.mode == "fast" else requested


# --- Pydantic Models for Standardized Results ---

class RegressionResults(BaseModel):
    """Output of the absorbing regression primitive."""
    coef: Dict[str, float]
    se: Dict[str, float]
    tstat: Dict[str, float]
    resid: np.ndarray = Field(..., description="Residuals aligned with `index`.")
    fitted: np.ndarray = Field(..., description="Fitted values including absorbed effects, aligned with `index`.")
    index: pd.Index = Field(..., description="Row labels of the observations used.")
    nobs: int
    df_resid: int
    n_clusters: Optional[int] = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True


class DrawSummary(BaseModel):
    """Counts of requested, valid, dropped and unfinished draws."""
    n_requested: int = 0
    n_valid: int = 0
    n_dropped: int = 0
    n_unfinished: int = 0

    class Config:
        frozen = True

    def __add__(self, other: "DrawSummary") -> "DrawSummary":
        return DrawSummary(
            n_requested=self.n_requested + other.n_requested,
            n_valid=self.n_valid + other.n_valid,
            n_dropped=self.n_dropped + other.n_dropped,
            n_unfinished=self.n_unfinished + other.n_unfinished,
        )


class DrawResults(BaseModel):
    """Valid draw statistics (in draw-index order) with their accounting."""
    statistics: np.ndarray = Field(..., description="Valid statistics; shape (n_valid,) or (n_valid, k).")
    draw_indices: np.ndarray = Field(..., description="Index of each valid draw.")
    summary: DrawSummary

    class Config:
        arbitrary_types_allowed = True
        frozen = True


class UnitEffect(BaseModel):
    """ATT of one treated unit with its aggregation weight."""
    unit: Any
    att: float
    weight: float

    class Config:
        frozen = True


class SDIDResults(BaseModel):
    """Results of the population-weighted SDID aggregator."""
    att: float = Field(..., description="Weight-weighted mean of the unit-level ATTs.")
    se: Optional[float] = Field(default=None, description="Cluster bootstrap standard error; None when undefined.")
    unit_effects: List[UnitEffect] = Field(default_factory=list)
    excluded_units: List[Any] = Field(default_factory=list, description="Treated units whose ATT or weight was undefined.")
    bootstrap_atts: Optional[np.ndarray] = None
    draws: DrawSummary = Field(default_factory=DrawSummary)
    parameters_used: Optional[Dict[str, Any]] = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True


class CRVEResults(BaseModel):
    """Conventional cluster-robust estimate of the treatment coefficient."""
    specification: str
    coef: float
    se: float
    tstat: float
    p_value: float
    df: int = Field(..., description="Degrees of freedom of the t reference distribution (clusters - 1).")
    nobs: int
    n_clusters: int

    class Config:
        frozen = True


class VarianceModelResults(BaseModel):
    """Fitted Ferman-Pinto heteroskedasticity model and the branch applied."""
    slope: float
    intercept: float
    branch: Literal["fitted", "uniform", "proportional"]
    variance: pd.Series = Field(..., description="Variance used for each cluster.")

    class Config:
        arbitrary_types_allowed = True
        frozen = True


class BlockBootstrapResults(BaseModel):
    """Results of the Ferman-Pinto block bootstrap."""
    alpha: float = Field(..., description="Treatment coefficient of the full regression.")
    p_uncorrected: float
    p_corrected: float
    cluster_contrasts: pd.Series = Field(..., description="Residual contrast W for each cluster.")
    cluster_scale: pd.Series = Field(..., description="Scale proxy q for each cluster.")
    variance_model: VarianceModelResults
    bootstrap_uncorrected: np.ndarray
    bootstrap_corrected: np.ndarray
    draws: DrawSummary

    class Config:
        arbitrary_types_allowed = True
        frozen = True


class RandomizationInferenceResults(BaseModel):
    """Results of randomization inference over placebo assignments."""
    beta: float = Field(..., description="Treatment coefficient under the actual assignment.")
    tstat: float
    p_beta: float
    p_t: float
    p_wild_cluster_bootstrap: Optional[float] = Field(default=None, description="Wild cluster bootstrap-t p-value from the actual assignment only.")
    placebo_clusters: List[Any] = Field(default_factory=list)
    null_betas: np.ndarray
    null_tstats: np.ndarray
    placebo_index: np.ndarray = Field(..., description="Placebo index (0 = actual assignment) of each valid draw.")
    draws: DrawSummary
    wild_draws: DrawSummary

    class Config:
        arbitrary_types_allowed = True
        frozen = True


class InferenceReport(BaseModel):
    """One row of the output table: an (outcome, specification) pair."""
    outcome: str
    specification: str
    point_estimate: float
    se: float
    crve_p: float
    p_wild_cluster_bootstrap: Optional[float] = None
    p_randomization_inference_t: Optional[float] = None
    p_randomization_inference_beta: Optional[float] = None
    p_block_bootstrap: Optional[float] = None
    p_block_bootstrap_corrected: Optional[float] = None
    N: int
    n_clusters: int
    ri_draws_valid: int = 0
    ri_draws_dropped: int = 0
    fp_draws_valid: int = 0
    fp_draws_dropped: int = 0

    class Config:
        frozen = True


class StudyResults(BaseModel):
    """All reports of a study plus the SDID aggregates."""
    reports: List[InferenceReport] = Field(default_factory=list)
    sdid: Dict[str, SDIDResults] = Field(default_factory=dict)
    details: Optional[Dict[str, Any]] = Field(default=None, exclude=True, description="Full per-procedure results keyed by (outcome, specification).")

    class Config:
        arbitrary_types_allowed = True
