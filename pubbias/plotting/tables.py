import numpy as np
import pandas as pd

from pubbias.analysis.meta_regression import MetaRegressionResult


def significance_stars(pval: float) -> str:
    if np.isnan(pval):
        return ""
    return (
        "***"
        if pval < 0.001
        else "**"
        if pval < 0.01
        else "*"
        if pval < 0.05
        else "."
        if pval < 0.1
        else ""
    )


def coefficient_table(result: MetaRegressionResult) -> pd.DataFrame:
    """Coefficient table of a fitted model, with significance symbols."""
    table = result.coefficients.copy()
    table["signif"] = table["pval"].apply(significance_stars)
    table.insert(0, "model", result.spec.name)
    return table


def heterogeneity_table(result: MetaRegressionResult) -> pd.DataFrame:
    """One-row summary of heterogeneity, variance components and fit statistics."""
    data = {
        "model": result.spec.name,
        "k": result.k,
        "k_excluded": result.k_excluded,
        "QE": result.qe,
        "QEp": result.qe_pval,
        "QM": result.qm,
        "QMp": result.qm_pval,
    }
    data.update({f"sigma2.{name}": s2 for name, s2 in result.sigma2.items()})
    data.update({f"n.{name}": n for name, n in result.n_groups.items()})
    data.update({f"I2.{name}": i2 for name, i2 in result.i2.items()})
    data.update(
        {
            "logLik": result.loglik,
            "deviance": result.deviance,
            "AIC": result.aic,
            "BIC": result.bic,
            "AICc": result.aicc,
        }
    )
    return pd.DataFrame([data])


def _format_coefficients(result: MetaRegressionResult) -> str:
    display = pd.DataFrame(index=result.coefficients.index)
    for col in ["estimate", "se", "tval", "ci_lb", "ci_ub"]:
        display[col] = result.coefficients[col].map(lambda x: f"{x:.4f}")
    display["pval"] = result.coefficients["pval"].map(lambda x: f"{x:.2e}")
    display["signif"] = result.coefficients["pval"].apply(significance_stars)
    return (
        display.to_string(justify="right")
        + "\n\nSignificance: *** p<0.001, ** p<0.01, * p<0.05, . p<0.1"
    )


def model_summary_text(result: MetaRegressionResult) -> str:
    """Plain-text summary of a fitted model in the layout of a metafor printout."""
    spec = result.spec
    formula = spec.formula()
    lines = [
        f"Multilevel meta-regression: {spec.name} (engine: {result.engine})",
        "=" * (len(formula) + len("Formula: ")),
        f"Formula: {formula}",
        f"Random effects: {spec.random_formula}",
        f"Number of observations: {result.k} ({result.k_excluded} excluded for missing values)",
        "",
        "Variance components:",
    ]
    for name, s2 in result.sigma2.items():
        lines.append(
            f"  sigma^2.{name}: {s2:.4f} (sqrt: {np.sqrt(s2):.4f}), "
            f"levels: {result.n_groups[name]}, I^2: {result.i2[name]:.1f}%"
        )
    lines += [
        "",
        f"Residual heterogeneity: QE(df = {result.dfs}) = {result.qe:.3f}, p = {result.qe_pval:.1e}",
    ]
    if not np.isnan(result.qm):
        n_mods = len([t for t in result.term_names if t != "intrcpt"])
        lines.append(
            f"Test of moderators: F({n_mods}, {result.dfs}) = {result.qm:.3f}, p = {result.qm_pval:.1e}"
        )
    lines += [
        f"logLik: {result.loglik:.3f}  deviance: {result.deviance:.3f}  "
        f"AIC: {result.aic:.3f}  BIC: {result.bic:.3f}  AICc: {result.aicc:.3f}",
        "",
        f"Model results (t-tests, df = {result.dfs}, {100 * spec.level:g}% CI):",
        _format_coefficients(result),
    ]
    return "\n".join(lines)
