import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd
from scipy import linalg, optimize
from scipy import stats as scipy_stats

from pubbias.exceptions import (
    MissingModeratorError,
    ModelConvergenceError,
    ModelSpecificationError,
)

logger = logging.getLogger(__name__)

# bounds on log(sigma^2) during REML optimisation
LOG_SIGMA2_BOUNDS = (-23.0, 10.0)
BOUNDARY_SIGMA2 = 1e-8


# --- random effects ---
@dataclass(frozen=True)
class RandomEffect:
    """A random intercept grouped by `column`, optionally nested within `nested_in`."""

    name: str
    column: str
    nested_in: Optional[str] = None

    @property
    def columns(self) -> list[str]:
        return [self.nested_in, self.column] if self.nested_in else [self.column]


DEFAULT_RANDOM_EFFECTS = (
    RandomEffect("study", "study_id"),
    RandomEffect("observation", "obs_id", nested_in="study_id"),
)


class GroupingStructure:
    """
    Explicit map from group key to row indices for each random-effect level.

    Nested levels are keyed by the tuple (outer key, inner key), so the same inner
    identifier appearing in two studies forms two distinct groups.
    """

    def __init__(self, levels: dict[str, dict[tuple, np.ndarray]], n_obs: int):
        self.levels = levels
        self.n_obs = n_obs

    @classmethod
    def from_frame(
        cls, df: pd.DataFrame, random_effects: tuple[RandomEffect, ...]
    ) -> "GroupingStructure":
        missing = sorted(
            {col for re in random_effects for col in re.columns if col not in df.columns}
        )
        if missing:
            raise MissingModeratorError(missing)
        levels = {}
        for re in random_effects:
            keys = df[re.columns]
            if keys.isna().any().any():
                raise ModelSpecificationError(
                    f"Missing grouping values in {re.columns} for random effect '{re.name}'"
                )
            indices = keys.groupby(re.columns, sort=True).indices
            levels[re.name] = {
                (k if isinstance(k, tuple) else (k,)): np.asarray(v)
                for k, v in indices.items()
            }
        return cls(levels, len(df))

    @property
    def names(self) -> list[str]:
        return list(self.levels)

    def n_groups(self, name: str) -> int:
        return len(self.levels[name])

    def group_codes(self, name: str) -> np.ndarray:
        """Integer group code for every row at the given level."""
        codes = np.empty(self.n_obs, dtype=int)
        for code, idx in enumerate(self.levels[name].values()):
            codes[idx] = code
        return codes

    def shared_group_matrix(self, name: str) -> np.ndarray:
        """Z Z' for one level: 1 where two rows share a group, else 0."""
        D = np.zeros((self.n_obs, self.n_obs))
        for idx in self.levels[name].values():
            D[np.ix_(idx, idx)] = 1.0
        return D


# --- model specification ---
@dataclass(frozen=True)
class MetaRegressionSpec:
    """
    What to fit: fixed-effect moderators, whether to include an intercept, and the
    random-effect structure. The intercept is never inferred from the moderator list.
    """

    name: str
    moderators: tuple[str, ...] = ()
    intercept: bool = True
    random_effects: tuple[RandomEffect, ...] = DEFAULT_RANDOM_EFFECTS
    level: float = 0.95

    def __post_init__(self):
        object.__setattr__(self, "moderators", tuple(self.moderators))
        object.__setattr__(self, "random_effects", tuple(self.random_effects))
        if not 0 < self.level < 1:
            raise ValueError(f"Confidence level must be in (0, 1), got {self.level}")
        if not self.moderators and not self.intercept:
            raise ModelSpecificationError(
                f"Model '{self.name}' has no moderators and no intercept"
            )

    def formula(self, response: str = "yi") -> str:
        terms = " + ".join(self.moderators) if self.moderators else "1"
        if self.moderators and not self.intercept:
            terms += " - 1"
        return f"{response} ~ {terms}"

    @property
    def random_formula(self) -> str:
        return " + ".join(
            f"(1 | {re.nested_in}/{re.column})" if re.nested_in else f"(1 | {re.column})"
            for re in self.random_effects
        )


def build_design_matrix(
    df: pd.DataFrame, moderators: tuple[str, ...], intercept: bool = True
) -> tuple[np.ndarray, list[str]]:
    """
    Build the fixed-effects design matrix.

    Numeric moderators enter as-is. Categorical moderators are indicator coded: the
    first level is the reference when an intercept is present; without an intercept
    the first categorical moderator keeps all of its levels.
    """
    columns, names = [], []
    if intercept:
        columns.append(np.ones(len(df)))
        names.append("intrcpt")
    full_coding_available = not intercept
    for mod in moderators:
        values = df[mod]
        if pd.api.types.is_bool_dtype(values) or pd.api.types.is_numeric_dtype(values):
            columns.append(values.astype(float).to_numpy())
            names.append(mod)
            continue
        levels = sorted(values.astype(str).unique())
        if not full_coding_available:
            levels = levels[1:]
        full_coding_available = False
        for lvl in levels:
            columns.append((values.astype(str) == lvl).astype(float).to_numpy())
            names.append(f"{mod}[{lvl}]")
    if not columns:
        raise ModelSpecificationError("Design matrix has no columns")
    return np.column_stack(columns), names


# --- fitted result ---
@dataclass(frozen=True)
class MetaRegressionResult:
    """Immutable record of a fitted multilevel meta-regression."""

    spec: MetaRegressionSpec
    coefficients: pd.DataFrame
    vcov: pd.DataFrame
    sigma2: pd.Series
    n_groups: dict
    k: int
    dfs: int
    loglik: float
    deviance: float
    aic: float
    bic: float
    aicc: float
    qe: float
    qe_pval: float
    qm: float
    qm_pval: float
    i2: pd.Series
    k_excluded: int = 0
    engine: str = "native"
    data: pd.DataFrame = field(default=None, repr=False, compare=False)
    design: np.ndarray = field(default=None, repr=False, compare=False)

    @property
    def term_names(self) -> list[str]:
        return list(self.coefficients.index)

    @property
    def estimates(self) -> np.ndarray:
        return self.coefficients["estimate"].to_numpy()

    def coefficient(self, term: str) -> pd.Series:
        """Get the row (estimate, se, tval, df, pval, ci_lb, ci_ub) for a single term."""
        if term not in self.coefficients.index:
            raise KeyError(f"Term '{term}' not in model '{self.spec.name}': {self.term_names}")
        return self.coefficients.loc[term]

    def _critical_value(self, level: Optional[float] = None) -> float:
        level = self.spec.level if level is None else level
        return scipy_stats.t.ppf(1 - (1 - level) / 2, self.dfs)

    def predict(self, newmods, level: Optional[float] = None) -> pd.DataFrame:
        """
        Predict the (average) effect for new moderator values.

        Args:
            newmods: array of shape (n, p) in coefficient order, or a DataFrame whose
                columns are the model's term names (the intercept column may be omitted).
            level (float, optional): confidence level, defaulting to the model's level.

        Returns:
            pd.DataFrame: pred, se, ci_lb, ci_ub, pi_lb, pi_ub
        """
        if isinstance(newmods, pd.DataFrame):
            newmods = newmods.copy()
            if self.spec.intercept and "intrcpt" not in newmods.columns:
                newmods["intrcpt"] = 1.0
            missing = [t for t in self.term_names if t not in newmods.columns]
            if missing:
                raise MissingModeratorError(missing, self.spec.name)
            Xnew = newmods[self.term_names].to_numpy(dtype=float)
        else:
            Xnew = np.atleast_2d(np.asarray(newmods, dtype=float))
        if Xnew.shape[1] != len(self.term_names):
            raise ValueError(
                f"newmods has {Xnew.shape[1]} columns, model has {len(self.term_names)} terms"
            )
        vb = self.vcov.to_numpy()
        pred = Xnew @ self.estimates
        se = np.sqrt(np.sum(Xnew * (Xnew @ vb), axis=1))
        pi_se = np.sqrt(se**2 + self.sigma2.sum())
        crit = self._critical_value(level)
        return pd.DataFrame(
            {
                "pred": pred,
                "se": se,
                "ci_lb": pred - crit * se,
                "ci_ub": pred + crit * se,
                "pi_lb": pred - crit * pi_se,
                "pi_ub": pred + crit * pi_se,
            }
        )

    def design_means(self) -> pd.Series:
        """Column means of the design matrix (used to hold other moderators constant)."""
        return pd.Series(self.design.mean(axis=0), index=self.term_names)

    def predict_on_moderator(
        self, moderator: str, xs: np.ndarray, level: Optional[float] = None
    ) -> pd.DataFrame:
        """Predict along one moderator with every other term held at its mean."""
        if moderator not in self.term_names:
            raise MissingModeratorError([moderator], self.spec.name)
        xs = np.asarray(xs, dtype=float)
        Xnew = np.tile(self.design_means().to_numpy(), (len(xs), 1))
        Xnew[:, self.term_names.index(moderator)] = xs
        return self.predict(Xnew, level=level).assign(**{moderator: xs})


# --- estimation ---
class MultilevelMetaRegression:
    """
    Multilevel meta-regression with known sampling variances, fitted by REML.

    The marginal covariance is V = diag(vi) + sum_j sigma2_j Z_j Z_j', one term per
    random-effect level. Fixed effects are estimated by GLS, and inference on them
    uses a t distribution with k - p degrees of freedom.
    """

    def __init__(
        self,
        df: pd.DataFrame,
        spec: MetaRegressionSpec,
        yi: str = "yi",
        vi: str = "vi",
        optimizer_options: Optional[dict] = None,
    ):
        self.spec = spec
        self.yi_col = yi
        self.vi_col = vi
        self.optimizer_options = {
            "xatol": 1e-7,
            "fatol": 1e-10,
            "maxiter": 4000,
            **(optimizer_options or {}),
        }
        self.fitted = False
        self.result = None
        self._check_columns(df)
        self.df, self.k_excluded = self._model_frame(df)
        self.X, self.term_names = build_design_matrix(
            self.df, spec.moderators, spec.intercept
        )
        self.y = self.df[yi].to_numpy(dtype=float)
        self.v = self.df[vi].to_numpy(dtype=float)
        self.grouping = GroupingStructure.from_frame(self.df, spec.random_effects)
        self.k, self.p = self.X.shape
        self._check_design()
        self._components = [
            self.grouping.shared_group_matrix(name) for name in self.grouping.names
        ]

    @property
    def required_columns(self) -> list[str]:
        grouping_cols = [col for re in self.spec.random_effects for col in re.columns]
        return list(
            dict.fromkeys([self.yi_col, self.vi_col, *self.spec.moderators, *grouping_cols])
        )

    def _check_columns(self, df: pd.DataFrame) -> None:
        missing = [col for col in self.required_columns if col not in df.columns]
        if missing:
            raise MissingModeratorError(missing, self.spec.name)

    def _model_frame(self, df: pd.DataFrame) -> tuple[pd.DataFrame, int]:
        complete = df[self.required_columns].notna().all(axis=1)
        n_incomplete = int((~complete).sum())
        if n_incomplete:
            logger.warning(
                f"Model '{self.spec.name}': {n_incomplete} row(s) with missing values "
                f"in {self.required_columns} excluded from this fit"
            )
        data = df.loc[complete].reset_index(drop=True)
        numeric = [
            col
            for col in [self.yi_col, self.vi_col, *self.spec.moderators]
            if pd.api.types.is_numeric_dtype(data[col])
        ]
        if not np.isfinite(data[numeric].to_numpy(dtype=float)).all():
            raise ModelSpecificationError(
                f"Model '{self.spec.name}': infinite values in {numeric}"
            )
        if (data[self.vi_col] <= 0).any():
            raise ModelSpecificationError(
                f"Model '{self.spec.name}': sampling variances must be strictly positive"
            )
        return data, n_incomplete

    def _check_design(self) -> None:
        if self.k <= self.p:
            raise ModelSpecificationError(
                f"Model '{self.spec.name}': {self.k} observations for {self.p} coefficients"
            )
        if np.linalg.matrix_rank(self.X) < self.p:
            raise ModelSpecificationError(
                f"Model '{self.spec.name}': design matrix is rank deficient ({self.term_names})"
            )

    def _marginal_covariance(self, sigma2: np.ndarray) -> np.ndarray:
        V = np.diag(self.v)
        for s2, D in zip(sigma2, self._components):
            V = V + s2 * D
        return V

    def _gls(self, sigma2: np.ndarray) -> dict:
        """GLS quantities for given variance components (None if V is not positive definite)."""
        V = self._marginal_covariance(sigma2)
        try:
            cho = linalg.cho_factor(V, lower=True)
        except linalg.LinAlgError:
            return None
        Vinv_X = linalg.cho_solve(cho, self.X)
        Vinv_y = linalg.cho_solve(cho, self.y)
        XtVinvX = self.X.T @ Vinv_X
        sign, logdet_xvx = np.linalg.slogdet(XtVinvX)
        if sign <= 0:
            return None
        beta = np.linalg.solve(XtVinvX, self.X.T @ Vinv_y)
        resid = self.y - self.X @ beta
        return {
            "beta": beta,
            "vb": np.linalg.inv(XtVinvX),
            "logdet_v": 2 * np.sum(np.log(np.diag(cho[0]))),
            "logdet_xvx": logdet_xvx,
            "rss": float(resid @ linalg.cho_solve(cho, resid)),
        }

    def _reml_loglik(self, sigma2: np.ndarray) -> float:
        gls = self._gls(sigma2)
        if gls is None:
            return -np.inf
        _, logdet_xx = np.linalg.slogdet(self.X.T @ self.X)
        return (
            -0.5 * (self.k - self.p) * np.log(2 * np.pi)
            + 0.5 * logdet_xx
            - 0.5 * gls["logdet_v"]
            - 0.5 * gls["logdet_xvx"]
            - 0.5 * gls["rss"]
        )

    def _starting_values(self) -> np.ndarray:
        """Deterministic starting values: the OLS residual variance in excess of the mean vi, split evenly."""
        beta_ols, *_ = np.linalg.lstsq(self.X, self.y, rcond=None)
        resid = self.y - self.X @ beta_ols
        excess = np.var(resid, ddof=self.p) - np.mean(self.v)
        total = max(excess, 0.01 * np.var(resid, ddof=self.p), 1e-4)
        return np.full(len(self._components), total / len(self._components))

    def _estimate_variance_components(self) -> np.ndarray:
        if not self._components:
            return np.array([])
        x0 = np.clip(np.log(self._starting_values()), *LOG_SIGMA2_BOUNDS)

        def neg_loglik(log_sigma2):
            ll = self._reml_loglik(np.exp(log_sigma2))
            return -ll if np.isfinite(ll) else np.inf

        res = optimize.minimize(
            neg_loglik,
            x0=x0,
            method="Nelder-Mead",
            bounds=[LOG_SIGMA2_BOUNDS] * len(x0),
            options=self.optimizer_options,
        )
        if not res.success or not np.isfinite(res.fun):
            raise ModelConvergenceError(self.spec.name, str(res.message))
        sigma2 = np.exp(res.x)
        for name, s2 in zip(self.grouping.names, sigma2):
            if s2 < BOUNDARY_SIGMA2:
                logger.warning(
                    f"Model '{self.spec.name}': variance component '{name}' estimated at the boundary (~0)"
                )
        return sigma2

    def _heterogeneity(self, beta, vb) -> dict:
        # residual heterogeneity from the fixed-effects (inverse variance) fit
        w = 1 / self.v
        Xw = self.X * w[:, None]
        beta_fe = np.linalg.solve(self.X.T @ Xw, Xw.T @ self.y)
        qe = float(np.sum(w * (self.y - self.X @ beta_fe) ** 2))
        dfs = self.k - self.p
        # omnibus test of moderators (all terms except the intercept)
        btt = [i for i, name in enumerate(self.term_names) if name != "intrcpt"]
        if btt:
            b = beta[btt]
            qm = float(b @ np.linalg.solve(vb[np.ix_(btt, btt)], b)) / len(btt)
            qm_pval = float(scipy_stats.f.sf(qm, len(btt), dfs))
        else:
            qm, qm_pval = np.nan, np.nan
        return {
            "qe": qe,
            "qe_pval": float(scipy_stats.chi2.sf(qe, dfs)),
            "qm": qm,
            "qm_pval": qm_pval,
        }

    def _i_squared(self, sigma2: np.ndarray) -> pd.Series:
        """Multilevel I^2 (Nakagawa & Santos 2012), as percentages."""
        W = np.diag(1 / self.v)
        P = W - W @ self.X @ np.linalg.solve(self.X.T @ W @ self.X, self.X.T @ W)
        typical_v = (self.k - self.p) / np.trace(P)
        total = sigma2.sum() + typical_v
        i2 = {"total": 100 * sigma2.sum() / total}
        i2.update({name: 100 * s2 / total for name, s2 in zip(self.grouping.names, sigma2)})
        return pd.Series(i2, name="I2")

    def fit(self) -> MetaRegressionResult:
        """Fit the model. Raises ModelConvergenceError if REML estimation fails."""
        logger.info(
            f"Fitting '{self.spec.name}': {self.spec.formula(self.yi_col)}, "
            f"random = {self.spec.random_formula}, k = {self.k}"
        )
        sigma2 = self._estimate_variance_components()
        gls = self._gls(sigma2)
        if gls is None:
            raise ModelConvergenceError(
                self.spec.name, "marginal covariance is not positive definite"
            )
        beta, vb = gls["beta"], gls["vb"]
        se = np.sqrt(np.diag(vb))
        dfs = self.k - self.p
        tval = beta / se
        crit = scipy_stats.t.ppf(1 - (1 - self.spec.level) / 2, dfs)
        coefficients = pd.DataFrame(
            {
                "estimate": beta,
                "se": se,
                "tval": tval,
                "df": dfs,
                "pval": 2 * scipy_stats.t.sf(np.abs(tval), dfs),
                "ci_lb": beta - crit * se,
                "ci_ub": beta + crit * se,
            },
            index=pd.Index(self.term_names, name="term"),
        )
        loglik = self._reml_loglik(sigma2)
        n_params = self.p + len(sigma2)
        aicc_n = max(dfs, n_params + 2)
        self.result = MetaRegressionResult(
            spec=self.spec,
            coefficients=coefficients,
            vcov=pd.DataFrame(vb, index=self.term_names, columns=self.term_names),
            sigma2=pd.Series(sigma2, index=self.grouping.names, name="sigma2", dtype=float),
            n_groups={name: self.grouping.n_groups(name) for name in self.grouping.names},
            k=self.k,
            dfs=dfs,
            loglik=float(loglik),
            deviance=float(-2 * loglik),
            aic=float(-2 * loglik + 2 * n_params),
            bic=float(-2 * loglik + n_params * np.log(dfs)),
            aicc=float(-2 * loglik + 2 * n_params * aicc_n / (aicc_n - n_params - 1)),
            i2=self._i_squared(sigma2),
            k_excluded=self.k_excluded,
            engine="native",
            data=self.df,
            design=self.X,
            **self._heterogeneity(beta, vb),
        )
        self.fitted = True
        logger.info(
            f"Model '{self.spec.name}' fitted: "
            + ", ".join(
                f"{term} = {row.estimate:.3f} (p = {row.pval:.3g})"
                for term, row in coefficients.iterrows()
            )
        )
        return self.result


def fit_meta_regression(
    df: pd.DataFrame, spec: MetaRegressionSpec, yi: str = "yi", vi: str = "vi"
) -> MetaRegressionResult:
    """Fit a multilevel meta-regression with the in-package REML estimator."""
    return MultilevelMetaRegression(df, spec, yi=yi, vi=vi).fit()
