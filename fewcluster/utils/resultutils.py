import pandas as pd
from typing import List, Optional, Union
from pathlib import Path

from fewcluster.config_models import (
    BlockBootstrapResults,
    CRVEResults,
    InferenceReport,
    RandomizationInferenceResults,
    SDIDResults,
)


def build_report(
    outcome: str,
    crve: CRVEResults,
    ri: Optional[RandomizationInferenceResults] = None,
    fp: Optional[BlockBootstrapResults] = None,
) -> InferenceReport:
    """Combine the per-procedure results of one (outcome, specification) pair."""
    report = {
        "outcome": outcome,
        "specification": crve.specification,
        "point_estimate": crve.coef,
        "se": crve.se,
        "crve_p": crve.p_value,
        "N": crve.nobs,
        "n_clusters": crve.n_clusters,
    }
    if ri is not None:
        report.update(
            p_wild_cluster_bootstrap=ri.p_wild_cluster_bootstrap,
            p_randomization_inference_t=ri.p_t,
            p_randomization_inference_beta=ri.p_beta,
            ri_draws_valid=ri.draws.n_valid,
            ri_draws_dropped=ri.draws.n_dropped,
        )
    if fp is not None:
        report.update(
            p_block_bootstrap=fp.p_uncorrected,
            p_block_bootstrap_corrected=fp.p_corrected,
            fp_draws_valid=fp.draws.n_valid,
            fp_draws_dropped=fp.draws.n_dropped,
        )
    return InferenceReport(**report)


def reports_to_frame(reports: List[InferenceReport]) -> pd.DataFrame:
    """One row per report, columns in report field order."""
    columns = list(InferenceReport.model_fields)
    return pd.DataFrame([r.model_dump() for r in reports], columns=columns)


def unit_effects_frame(results: SDIDResults) -> pd.DataFrame:
    """Unit-level SDID effects with their aggregation weights."""
    return pd.DataFrame([e.model_dump() for e in results.unit_effects], columns=["unit", "att", "weight"])


def export_reports(reports: List[InferenceReport], path: Union[str, Path]) -> pd.DataFrame:
    """Write the reports to CSV and return the written frame."""
    frame = reports_to_frame(reports)
    frame.to_csv(path, index=False)
    return frame
