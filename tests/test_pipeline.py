import pandas as pd
import pytest

from pubbias import cli, pipeline
from pubbias.analysis import bias
from pubbias.exceptions import ConfigurationError, DataValidationError
from pubbias.plotting import plot_utils
from pubbias.utils import config, file_ops


@pytest.fixture
def example_config(tmp_path):
    return pipeline.PipelineConfig.from_yaml(config.default_config_fp, output_dir=tmp_path)


def test_default_config_reads_yaml(example_config, tmp_path):
    assert example_config.input_fp == config.example_data_fp
    assert example_config.output_dir == tmp_path
    assert example_config.column_map["paper_id"] == "study_id"
    assert example_config.model.engine == "native"
    assert [re.name for re in example_config.model.get_random_effects()] == ["study", "observation"]


def test_config_overrides():
    cfg = pipeline.PipelineConfig.from_yaml(
        config.default_config_fp, level=0.9, extra_moderators=["latitude_c"], measure=None
    )
    assert cfg.model.level == 0.9
    assert cfg.model.extra_moderators == ["latitude_c"]
    assert cfg.measure == "ROM"


def test_config_rejects_unknown_engine(tmp_path):
    fp = tmp_path / "config.yaml"
    file_ops.write_yaml({"models": {"engine": "stan"}}, fp)
    with pytest.raises(ConfigurationError):
        pipeline.PipelineConfig.from_yaml(fp)


def test_config_rejects_malformed_yaml(tmp_path):
    fp = tmp_path / "config.yaml"
    fp.write_text("models: [unclosed")
    with pytest.raises(ConfigurationError):
        pipeline.PipelineConfig.from_yaml(fp)


def test_config_empty_sections_use_defaults(tmp_path):
    fp = tmp_path / "config.yaml"
    fp.write_text("effect_size:\nmoderators:\nmodels:\n")
    cfg = pipeline.PipelineConfig.from_yaml(fp)
    assert cfg.measure == "ROM"
    assert cfg.centre == ["year", "latitude", "longitude"]
    assert cfg.model.definitions == bias.MODEL_DEFINITIONS


def test_config_overrides_one_model_definition(tmp_path):
    fp = tmp_path / "config.yaml"
    file_ops.write_yaml(
        {
            "models": {
                "definitions": {
                    "bias_detection": {"moderators": ["sei", "year_c", "latitude_c"], "intercept": False}
                }
            }
        },
        fp,
    )
    cfg = pipeline.PipelineConfig.from_yaml(fp)
    assert cfg.model.definitions["bias_detection"]["moderators"] == ["sei", "year_c", "latitude_c"]
    # the other models keep their defaults
    assert cfg.model.definitions["bias_adjustment"] == {"moderators": ["vi", "year_c"], "intercept": True}
    assert cfg.model.definitions["unadjusted"] == {"moderators": [], "intercept": True}

    specs = pipeline.build_model_specs(cfg.model)
    assert [spec.name for spec in specs] == ["bias_detection", "bias_adjustment", "unadjusted"]
    assert specs[0].moderators == ("sei", "year_c", "latitude_c")
    assert not specs[0].intercept
    assert specs[1].moderators == ("vi", "year_c") and specs[1].intercept
    assert specs[2].formula() == "yi ~ 1"


@pytest.mark.parametrize(
    "definitions",
    [
        {"bias_check": {"moderators": ["sei"], "intercept": False}},
        {"bias_adjustment": {"moderators": ["vi"], "intercept": False}},
        {"bias_detection": {"moderators": [], "intercept": False}},
        {"bias_detection": {"moderators": ["sei"], "intercept": "no"}},
        {"unadjusted": {"moderators": [], "intercept": True, "weights": "vi"}},
    ],
)
def test_config_rejects_bad_model_definitions(tmp_path, definitions):
    fp = tmp_path / "config.yaml"
    file_ops.write_yaml({"models": {"definitions": definitions}}, fp)
    with pytest.raises(ConfigurationError):
        pipeline.PipelineConfig.from_yaml(fp)


def test_pipeline_uses_configured_definitions(example_config):
    example_config.model = pipeline.ModelConfig(
        definitions={"bias_detection": {"moderators": ["sei"], "intercept": False}}
    )
    results = pipeline.run_pipeline(example_config)
    assert results.detection.term_names == ["sei"]
    assert results.adjustment.term_names == ["intrcpt", "vi", "year_c"]


def test_run_pipeline_on_example_data(example_config):
    results = pipeline.run_pipeline(example_config)
    # one zero mean and one missing mean in the example file
    assert results.exclusion_report.n_before == 40
    assert results.exclusion_report.n_after == 38
    assert len(results.data) == 38
    assert set(results.models) == {"bias_detection", "bias_adjustment", "unadjusted"}
    assert results.detection.term_names == ["sei", "year_c"]
    assert results.adjustment.term_names == ["intrcpt", "vi", "year_c"]
    assert results.comparison.loc["bias_adjusted", "estimate"] == (
        results.adjustment.coefficient("intrcpt")["estimate"]
    )


def test_pipeline_is_deterministic(example_config):
    first = pipeline.run_pipeline(example_config)
    second = pipeline.run_pipeline(example_config)
    for name in first.models:
        pd.testing.assert_frame_equal(
            first.models[name].coefficients, second.models[name].coefficients, check_exact=True
        )


def test_pipeline_extra_moderators(example_config):
    example_config.model.extra_moderators = ["latitude_c"]
    results = pipeline.run_pipeline(example_config)
    assert results.detection.term_names == ["sei", "year_c", "latitude_c"]


def test_pipeline_missing_input(tmp_path):
    cfg = pipeline.PipelineConfig(input_fp=tmp_path / "missing.csv", output_dir=tmp_path)
    with pytest.raises(DataValidationError):
        pipeline.run_pipeline(cfg)


def test_write_results(example_config, tmp_path):
    results = pipeline.run_pipeline(example_config)
    out_dir = pipeline.write_results(results)
    assert out_dir.parent == tmp_path
    for name in ["comparison.csv", "heterogeneity.csv", "exclusion_report.csv", "model_summaries.txt"]:
        assert (out_dir / name).exists()
    for name in results.models:
        assert (out_dir / f"coefficients_{name}.csv").exists()
    assert len(list((out_dir / "figures").glob("*.png"))) == 4
    assert len(list((out_dir / "figures").glob("bubble_panels_*.png"))) == 1
    summary = file_ops.read_yaml(out_dir / "run_summary.yaml")
    assert summary["records"]["n_after"] == 38
    assert summary["models"]["unadjusted"]["formula"] == "yi ~ 1"


def test_write_results_uses_configured_dpi(example_config, monkeypatch):
    saved = []
    save_fig = plot_utils.save_fig

    def record(fig, fig_name, **kwargs):
        saved.append((fig_name, kwargs.get("dpi")))
        return save_fig(fig, fig_name, **kwargs)

    monkeypatch.setattr(plot_utils, "save_fig", record)
    example_config.dpi = 72
    pipeline.write_results(pipeline.run_pipeline(example_config))
    assert len(saved) == 4
    assert all(dpi == 72 for _, dpi in saved)


def test_cli_main(tmp_path, capsys):
    exit_code = cli.main(["--output-dir", str(tmp_path), "--no-plots", "--quiet"])
    assert exit_code == 0
    out_dir = next(tmp_path.glob("pubbias_*"))
    assert not (out_dir / "figures").exists()
    assert "Results written to" in capsys.readouterr().out


def test_cli_reports_errors(tmp_path):
    exit_code = cli.main([str(tmp_path / "missing.csv"), "--output-dir", str(tmp_path)])
    assert exit_code == 1
