import pytest
import numpy as np
import pandas as pd

from fewcluster import InferenceStudy
from fewcluster.config_models import InferenceReport, StudyConfig
from fewcluster.utils.resultutils import (
    build_report,
    export_reports,
    reports_to_frame,
    unit_effects_frame,
)
from fewcluster.exceptions import FewClusterConfigError, FewClusterDataError


def _study_config(df: pd.DataFrame, **overrides) -> StudyConfig:
    params = dict(
        df=df,
        outcomes=["y"],
        treatment="treat",
        cluster="state",
        time="year",
        potential_treatment="potential",
        fe_spec="state^year + state^qc + year^qc",
        controls=["age"],
        group="qc",
        weight="weight",
        unemployment="unemp",
        mode="fast",
        fast_draws=3,
        seed=5,
    )
    params.update(overrides)
    return StudyConfig(**params)


def test_study_reports_every_specification(group_panel):
    results = InferenceStudy(_study_config(group_panel)).run()
    assert [r.specification for r in results.reports] == ["fe", "demographics", "unemployment"]
    for report in results.reports:
        assert report.outcome == "y"
        assert report.N == len(group_panel)
        assert report.n_clusters == 8
        assert report.point_estimate == pytest.approx(0.8, abs=0.5)
        assert 0 < report.p_randomization_inference_beta <= 1
        assert 0 <= report.p_block_bootstrap <= 1
        assert report.ri_draws_valid + report.ri_draws_dropped <= 8 * 3
        assert report.fp_draws_valid == 3
    assert set(results.details) == {"y/fe", "y/demographics", "y/unemployment"}
    assert results.sdid == {}


def test_study_specification_subset(group_panel):
    study = InferenceStudy(_study_config(group_panel, specifications=["unemployment"]))
    assert [s.name for s in study.specifications("y")] == ["unemployment"]


def test_study_unknown_specification(group_panel):
    study = InferenceStudy(_study_config(group_panel, specifications=["minwage"]))
    with pytest.raises(FewClusterConfigError, match="Unknown specification"):
        study.specifications("y")


def test_study_year_range(group_panel):
    study = InferenceStudy(_study_config(group_panel, year_range=(2, 4), specifications=["fe"]))
    assert study.panel()["year"].min() == 2
    results = study.run()
    assert results.reports[0].N == int((group_panel["year"] >= 2).sum())


def test_study_empty_year_range(group_panel):
    study = InferenceStudy(_study_config(group_panel, year_range=(2030, 2040)))
    with pytest.raises(FewClusterDataError, match="No observations"):
        study.run()


def test_study_with_sdid(group_panel):
    config = _study_config(group_panel, specifications=["fe"], sdid_outcomes=["y"], B=4)
    results = InferenceStudy(config).run()
    sdid = results.sdid["y"]
    assert np.isfinite(sdid.att)
    assert [e.unit for e in sdid.unit_effects] == [0]
    assert sdid.draws.n_requested == 3


def test_study_accepts_dict(group_panel):
    params = _study_config(group_panel).model_dump()
    params["df"] = group_panel
    assert InferenceStudy(params).config.fe_spec == "state^year + state^qc + year^qc"


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------

def test_reports_export(group_panel, tmp_path):
    results = InferenceStudy(_study_config(group_panel, specifications=["fe"])).run()
    path = tmp_path / "results.csv"
    frame = export_reports(results.reports, path)
    written = pd.read_csv(path)
    assert list(written.columns) == list(InferenceReport.model_fields)
    assert len(written) == 1
    assert written.loc[0, "specification"] == "fe"
    assert frame.loc[0, "point_estimate"] == pytest.approx(written.loc[0, "point_estimate"])


def test_build_report_without_resampling(group_panel):
    results = InferenceStudy(_study_config(group_panel, specifications=["fe"])).run()
    crve = results.details["y/fe"]["crve"]
    report = build_report("y", crve)
    assert report.p_randomization_inference_beta is None
    assert report.ri_draws_valid == 0
    assert reports_to_frame([report]).shape == (1, len(InferenceReport.model_fields))


def test_unit_effects_frame(group_panel):
    config = _study_config(group_panel, specifications=["fe"], sdid_outcomes=["y"], B=0)
    results = InferenceStudy(config).run()
    frame = unit_effects_frame(results.sdid["y"])
    assert list(frame.columns) == ["unit", "att", "weight"]
    assert len(frame) == 1
