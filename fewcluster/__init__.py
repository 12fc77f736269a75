from .estimators.sdid import SyntheticDIDAggregator
from .estimators.blockboot import BlockBootstrapCorrector
from .estimators.randinf import RandomizationInferenceEngine
from .estimators.crve import cluster_robust_estimate
from .study import InferenceStudy
from .utils.bootutils import resample_and_estimate, run_cluster_bootstrap
from .utils.regutils import AbsorbingRegression, fit_absorbing_regression
from .utils.sdidutils import aggregate_sdid, synthetic_control_att
from .utils.resultutils import export_reports, reports_to_frame

# Define __all__ to specify the public API of the fewcluster package
__all__ = [
    "SyntheticDIDAggregator",
    "BlockBootstrapCorrector",
    "RandomizationInferenceEngine",
    "cluster_robust_estimate",
    "InferenceStudy",
    "resample_and_estimate",
    "run_cluster_bootstrap",
    "AbsorbingRegression",
    "fit_absorbing_regression",
    "aggregate_sdid",
    "synthetic_control_att",
    "export_reports",
    "reports_to_frame",
]
