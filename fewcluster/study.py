import pandas as pd
from typing import Any, Dict, List, Tuple

from .utils.datautils import parse_fe_spec, validate_panel
from .utils.resultutils import build_report
from .estimators.crve import cluster_robust_estimate
from .estimators.randinf import RandomizationInferenceEngine
from .estimators.blockboot import BlockBootstrapCorrector
from .estimators.sdid import SyntheticDIDAggregator
from .exceptions import FewClusterConfigError, FewClusterDataError
from .config_models import (
    BlockBootstrapConfig,
    InferenceReport,
    RandomizationInferenceConfig,
    RegressionSpec,
    SDIDConfig,
    SDIDResults,
    StudyConfig,
    StudyResults,
    standard_specifications,
)


class InferenceStudy:
    """
    Runs every inference procedure for every (outcome, specification) pair.

    For each outcome the standard nested specifications are built from the
    study configuration (fixed effects; + demographics; + unemployment x
    group; + minimum wage x group). Each pair gets the conventional
    cluster-robust estimate, randomization inference with the nested wild
    cluster bootstrap, and the Ferman-Pinto block bootstrap. Outcomes listed
    in `sdid_outcomes` are also estimated by population-weighted SDID.
    """

    def __init__(self, config: StudyConfig) -> None:
        if isinstance(config, dict):
            config = StudyConfig(**config)
        self.config = config

    def panel(self) -> pd.DataFrame:
        """Input panel restricted to `year_range` (inclusive)."""
        df = self.config.df
        if self.config.year_range is None:
            return df
        start, end = self.config.year_range
        panel = df.loc[df[self.config.time].between(start, end)]
        if panel.empty:
            raise FewClusterDataError(f"No observations in year_range {self.config.year_range}.")
        return panel

    def base_spec(self, outcome: str) -> RegressionSpec:
        cfg = self.config
        return RegressionSpec(
            name="baseline",
            outcome=outcome,
            treatment=cfg.treatment,
            cluster=cfg.cluster,
            absorb=parse_fe_spec(cfg.fe_spec),
            controls=cfg.controls,
            group=cfg.group,
            weight=cfg.weight,
            unemployment=cfg.unemployment,
            minwage=cfg.minwage,
        )

    def specifications(self, outcome: str) -> List[RegressionSpec]:
        """Standard specifications of `outcome`, filtered by `config.specifications`."""
        specs = standard_specifications(self.base_spec(outcome))
        if self.config.specifications is None:
            return specs
        available = {s.name for s in specs}
        unknown = set(self.config.specifications) - available
        if unknown:
            raise FewClusterConfigError(
                f"Unknown specification(s) {sorted(unknown)}; available: {sorted(available)}."
            )
        return [s for s in specs if s.name in self.config.specifications]

    def _shared(self, panel: pd.DataFrame) -> Dict[str, Any]:
        return {"df": panel, "seed": self.config.seed, "n_jobs": self.config.n_jobs, "max_time": self.config.max_time}

    def run_pair(self, panel: pd.DataFrame, spec: RegressionSpec) -> Tuple[InferenceReport, Dict[str, Any]]:
        """Report of one (outcome, specification) pair and the full procedure results."""
        cfg = self.config
        shared = self._shared(panel)

        crve = cluster_robust_estimate(panel, spec)
        ri = RandomizationInferenceEngine(
            RandomizationInferenceConfig(
                spec=spec, potential_treatment=cfg.potential_treatment, B=cfg.draws(cfg.B_ri), **shared
            )
        ).fit()
        fp = BlockBootstrapCorrector(
            BlockBootstrapConfig(spec=spec, time=cfg.time, B=cfg.draws(cfg.B_fp), **shared)
        ).fit()
        return build_report(spec.outcome, crve, ri, fp), {"crve": crve, "ri": ri, "fp": fp}

    def run_sdid(self, panel: pd.DataFrame, outcome: str) -> SDIDResults:
        """SDID aggregate of `outcome` over the clusters, within group 1 when a group is set."""
        cfg = self.config
        if cfg.group is not None:
            panel = panel.loc[panel[cfg.group] == 1]
        sdid_config = SDIDConfig(
            outcome=outcome,
            treat=cfg.treatment,
            unitid=cfg.cluster,
            time=cfg.time,
            weight=cfg.weight,
            B=cfg.draws(cfg.B),
            **self._shared(panel),
        )
        return SyntheticDIDAggregator(sdid_config).fit()

    def run(self) -> StudyResults:
        """
        Run the study.

        Returns
        -------
        StudyResults
            One `InferenceReport` per (outcome, specification) pair in
            configuration order, the SDID results keyed by outcome, and the
            full per-procedure results in `details`.
        """
        cfg = self.config

        # 1) Sample restriction and validation
        panel = self.panel()
        validate_panel(panel, cfg.cluster, cfg.time, cfg.treatment, cfg.weight)

        # 2) Regression-based inference
        reports: List[InferenceReport] = []
        details: Dict[str, Any] = {}
        for outcome in cfg.outcomes:
            for spec in self.specifications(outcome):
                report, detail = self.run_pair(panel, spec)
                reports.append(report)
                details[f"{outcome}/{spec.name}"] = detail

        # 3) SDID
        sdid: Dict[str, SDIDResults] = {}
        for outcome in cfg.sdid_outcomes:
            sdid[outcome] = self.run_sdid(panel, outcome)

        return StudyResults(reports=reports, sdid=sdid, details=details)
