import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import pandas as pd
from tqdm.auto import tqdm

from pubbias.analysis import bias, effect_sizes
from pubbias.analysis.effect_sizes import ExclusionReport
from pubbias.analysis.meta_regression import (
    MetaRegressionResult,
    MetaRegressionSpec,
    MultilevelMetaRegression,
    RandomEffect,
)
from pubbias.exceptions import ConfigurationError, PubBiasError
from pubbias.plotting import bubble, funnel, plot_config, plot_utils, tables
from pubbias.processing import loading, moderators
from pubbias.utils import config, file_ops

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

ENGINES = ("native", "metafor")


@dataclass
class ModelConfig:
    engine: str = "native"
    level: float = 0.95
    extra_moderators: list[str] = field(default_factory=list)
    random_effects: list[dict] = field(
        default_factory=lambda: [
            {"name": "study", "column": "study_id"},
            {"name": "observation", "column": "obs_id", "nested_in": "study_id"},
        ]
    )
    definitions: dict[str, dict] = field(default_factory=dict)

    def __post_init__(self):
        if self.engine not in ENGINES:
            raise ConfigurationError(f"Unknown engine '{self.engine}'. Use one of {ENGINES}")
        if not 0 < float(self.level) < 1:
            raise ConfigurationError(f"Confidence level must be in (0, 1), got {self.level}")
        self.level = float(self.level)
        self.definitions = self._merge_definitions(self.definitions or {})

    @staticmethod
    def _merge_definitions(overrides: dict) -> dict[str, dict]:
        """Overlay configured model definitions on the defaults, one model at a time."""
        unknown = [name for name in overrides if name not in bias.MODEL_DEFINITIONS]
        if unknown:
            raise ConfigurationError(
                f"Unknown model definition(s) {unknown}. Use {list(bias.MODEL_DEFINITIONS)}"
            )
        definitions = {}
        for name, default in bias.MODEL_DEFINITIONS.items():
            definition = {**default, **(overrides.get(name) or {})}
            if set(definition) != {"moderators", "intercept"}:
                raise ConfigurationError(
                    f"Model '{name}' takes 'moderators' and 'intercept', got {sorted(definition)}"
                )
            if not isinstance(definition["intercept"], bool):
                raise ConfigurationError(f"Model '{name}': intercept must be true or false")
            if name in bias.POOLED_MODELS and not definition["intercept"]:
                raise ConfigurationError(f"Model '{name}' estimates a pooled effect and needs an intercept")
            definition["moderators"] = list(definition["moderators"] or [])
            if not definition["moderators"] and not definition["intercept"]:
                raise ConfigurationError(f"Model '{name}' has no moderators and no intercept")
            definitions[name] = definition
        return definitions

    def get_random_effects(self) -> tuple[RandomEffect, ...]:
        try:
            return tuple(RandomEffect(**re) for re in self.random_effects)
        except TypeError as e:
            raise ConfigurationError(f"Malformed random effect declaration: {e}") from e


@dataclass
class PipelineConfig:
    input_fp: Path = config.example_data_fp
    output_dir: Path = config.results_dir
    delimiter: str = ","
    column_map: dict = field(default_factory=dict)
    measure: str = "ROM"
    centre: list[str] = field(
        default_factory=lambda: list(moderators.DEFAULT_CENTRED_MODERATORS)
    )
    bubble_moderators: list[str] = field(default_factory=lambda: ["sei", "year_c"])
    make_plots: bool = True
    dpi: int = 150
    model: ModelConfig = field(default_factory=ModelConfig)

    def __post_init__(self):
        self.input_fp = Path(self.input_fp)
        self.output_dir = Path(self.output_dir)
        if isinstance(self.model, dict):
            self.model = ModelConfig(**self.model)
        if self.measure not in effect_sizes.EFFECT_MEASURES:
            raise ConfigurationError(
                f"Unknown effect measure '{self.measure}'. Use one of {effect_sizes.EFFECT_MEASURES}"
            )

    @classmethod
    def from_yaml(cls, fp: Path = config.default_config_fp, **overrides) -> "PipelineConfig":
        """Read the YAML configuration, then apply any non-None overrides (e.g. from the CLI)."""
        raw = file_ops.read_yaml(fp)
        data_cfg = raw.get("data", {}) or {}
        plot_cfg = raw.get("plotting", {}) or {}
        kwargs = {
            "delimiter": data_cfg.get("delimiter", ","),
            "column_map": data_cfg.get("column_map") or {},
            "measure": (raw.get("effect_size") or {}).get("measure", "ROM"),
            "centre": (raw.get("moderators") or {}).get(
                "centre", list(moderators.DEFAULT_CENTRED_MODERATORS)
            ),
            "bubble_moderators": plot_cfg.get("bubble_moderators", ["sei", "year_c"]),
            "make_plots": plot_cfg.get("enabled", True),
            "dpi": plot_cfg.get("dpi", 150),
        }
        if data_cfg.get("input_fp"):
            kwargs["input_fp"] = config.repo_dir / data_cfg["input_fp"]
        model_kwargs = raw.get("models", {}) or {}
        for key in ("engine", "level", "extra_moderators"):
            if overrides.get(key) is not None:
                model_kwargs[key] = overrides.pop(key)
            overrides.pop(key, None)
        try:
            kwargs["model"] = ModelConfig(**model_kwargs)
            kwargs.update({k: v for k, v in overrides.items() if v is not None})
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigurationError(f"Unrecognised configuration key in {fp}: {e}") from e


@dataclass
class PipelineResults:
    data: pd.DataFrame
    exclusion_report: ExclusionReport
    models: dict[str, MetaRegressionResult]
    comparison: pd.DataFrame
    egger: dict
    config: PipelineConfig

    @property
    def detection(self) -> MetaRegressionResult:
        return self.models[bias.DETECTION]

    @property
    def adjustment(self) -> MetaRegressionResult:
        return self.models[bias.ADJUSTMENT]

    @property
    def unadjusted(self) -> MetaRegressionResult:
        return self.models[bias.UNADJUSTED]


def get_engine(engine: str) -> type[MultilevelMetaRegression]:
    if engine == "metafor":
        from pubbias.analysis.metafor import MetaforModel

        return MetaforModel
    return MultilevelMetaRegression


def build_model_specs(model_config: ModelConfig) -> list[MetaRegressionSpec]:
    """The detection, adjustment and unadjusted models, in fitting order."""
    random_effects = model_config.get_random_effects()
    specs = []
    for name, definition in model_config.definitions.items():
        mods = list(definition["moderators"])
        if name == bias.DETECTION:
            mods += [m for m in model_config.extra_moderators if m not in mods]
        specs.append(
            MetaRegressionSpec(
                name=name,
                moderators=tuple(mods),
                intercept=definition["intercept"],
                random_effects=random_effects,
                level=model_config.level,
            )
        )
    return specs


def prepare_data(pipeline_config: PipelineConfig) -> tuple[pd.DataFrame, ExclusionReport]:
    """Load study records, calculate effect sizes and derive the model columns."""
    df = loading.load_study_records(
        pipeline_config.input_fp,
        column_map=pipeline_config.column_map,
        delimiter=pipeline_config.delimiter,
    )
    df, report = effect_sizes.calculate_effect_sizes(df, measure=pipeline_config.measure)
    df = moderators.prepare_moderators(df, centre=pipeline_config.centre)
    return df, report


def fit_models(
    df: pd.DataFrame, model_config: ModelConfig
) -> dict[str, MetaRegressionResult]:
    engine = get_engine(model_config.engine)
    specs = build_model_specs(model_config)
    results = {}
    for spec in tqdm(specs, desc="Fitting models"):
        try:
            results[spec.name] = engine(df, spec).fit()
        except PubBiasError as e:
            logger.error(f"Model '{spec.name}' could not be fitted: {e}")
            raise
    return results


def run_pipeline(pipeline_config: Optional[PipelineConfig] = None) -> PipelineResults:
    """Run the full workflow: load, effect sizes, moderators, the three models, comparison."""
    pipeline_config = pipeline_config or PipelineConfig.from_yaml()
    logger.info(f"Running publication bias workflow on {pipeline_config.input_fp}")
    try:
        df, report = prepare_data(pipeline_config)
    except PubBiasError as e:
        logger.error(f"Data preparation failed: {e}")
        raise
    models = fit_models(df, pipeline_config.model)
    comparison = bias.comparison_table(models[bias.UNADJUSTED], models[bias.ADJUSTMENT])
    egger = bias.egger_test(df)
    logger.info(
        f"Pooled effect: unadjusted = {comparison.loc['unadjusted', 'estimate']:.3f}, "
        f"bias-adjusted = {comparison.loc['bias_adjusted', 'estimate']:.3f}"
    )
    return PipelineResults(
        data=df,
        exclusion_report=report,
        models=models,
        comparison=comparison,
        egger=egger,
        config=pipeline_config,
    )


def make_figures(results: PipelineResults) -> dict[str, plt.Figure]:
    """Bubble plots of the detection model (single and side by side) and a funnel plot."""
    cfg = results.config
    ylabel = plot_config.EFFECT_LABELS.get(cfg.measure, "Effect size")
    bubble_config = bubble.BubbleConfig(ylabel=ylabel, dpi=cfg.dpi)
    figures = {}
    for moderator in cfg.bubble_moderators:
        fig, _ = bubble.plot_bubble(results.detection, moderator, config=bubble_config)
        figures[f"bubble_{moderator}"] = fig
    if len(cfg.bubble_moderators) > 1:
        n_panels = len(cfg.bubble_moderators)
        fig, axes = plt.subplots(
            1, n_panels, figsize=(6 * n_panels, 5), dpi=cfg.dpi, sharey=True, squeeze=False
        )
        for ax, moderator in zip(axes[0], cfg.bubble_moderators):
            bubble.plot_bubble(results.detection, moderator, ax=ax, config=bubble_config)
        plot_utils.label_panels(axes)
        figures["bubble_panels"] = fig
    fig, _ = funnel.plot_funnel(
        results.data, results.unadjusted, xlabel=ylabel, dpi=cfg.dpi
    )
    figures["funnel"] = fig
    return figures


def _run_summary(results: PipelineResults) -> dict:
    cfg = results.config
    return {
        "input_fp": cfg.input_fp,
        "measure": cfg.measure,
        "engine": cfg.model.engine,
        "level": cfg.model.level,
        "records": {
            "n_before": results.exclusion_report.n_before,
            "n_after": results.exclusion_report.n_after,
            "excluded": results.exclusion_report.reasons,
        },
        "models": {
            name: {
                "formula": res.spec.formula(),
                "random": res.spec.random_formula,
                "k": res.k,
                "k_excluded": res.k_excluded,
                "sigma2": res.sigma2.to_dict(),
                "coefficients": res.coefficients.to_dict(orient="index"),
            }
            for name, res in results.models.items()
        },
        "comparison": results.comparison.drop(columns=["model_name"]).to_dict(orient="index"),
        "egger": results.egger,
        "config": asdict(cfg),
    }


def write_results(
    results: PipelineResults, output_dir: Optional[Path] = None, make_plots: Optional[bool] = None
) -> Path:
    """Write tables, figures, text summaries and a YAML run summary to a timestamped directory."""
    cfg = results.config
    run_key = file_ops.get_now_timestamp_formatted()
    out_dir = Path(output_dir or cfg.output_dir) / f"pubbias_{run_key}"
    out_dir.mkdir(parents=True, exist_ok=True)

    for name, res in results.models.items():
        file_ops.write_table(tables.coefficient_table(res), out_dir / f"coefficients_{name}.csv")
    file_ops.write_table(
        pd.concat([tables.heterogeneity_table(res) for res in results.models.values()]),
        out_dir / "heterogeneity.csv",
        index=False,
    )
    file_ops.write_table(results.comparison, out_dir / "comparison.csv")
    file_ops.write_table(
        results.exclusion_report.to_frame(), out_dir / "exclusion_report.csv", index=False
    )
    if results.exclusion_report.n_excluded:
        file_ops.write_table(
            results.exclusion_report.excluded, out_dir / "excluded_records.csv", index=False
        )
    with open(out_dir / "model_summaries.txt", "w") as f:
        f.write("\n\n".join(tables.model_summary_text(res) for res in results.models.values()))
    file_ops.write_yaml(_run_summary(results), out_dir / "run_summary.yaml")

    if cfg.make_plots if make_plots is None else make_plots:
        for fig_name, fig in make_figures(results).items():
            plot_utils.save_fig(
                fig, fig_name, run_key=run_key, fig_dir=out_dir / "figures", dpi=cfg.dpi
            )
            plt.close(fig)

    logger.info(f"Results written to {out_dir}")
    return out_dir
