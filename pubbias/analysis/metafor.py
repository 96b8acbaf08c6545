import logging

import numpy as np
import pandas as pd

from pubbias.analysis.meta_regression import (
    MetaRegressionResult,
    MetaRegressionSpec,
    MultilevelMetaRegression,
)
from pubbias.exceptions import ModelConvergenceError
from pubbias.utils import file_ops

logger = logging.getLogger(__name__)


class MetaforModel(MultilevelMetaRegression):
    """
    Fits the same model through R's metafor::rma.mv (via rpy2).

    Data preparation, design matrix construction and grouping come from the
    in-package estimator, so both engines see identical inputs. rpy2 and the R
    package are only imported when a fit is requested.
    """

    def grouping_keys(self) -> pd.DataFrame:
        """One integer group code per row and random effect (nested levels already combined)."""
        return pd.DataFrame(
            {f"re_{name}": self.grouping.group_codes(name) for name in self.grouping.names},
            index=self.df.index,
        )

    def _get_r_df(self):
        """Get the R dataframe holding the grouping codes referenced by the random formulas."""
        import rpy2.robjects as ro
        from rpy2.robjects import pandas2ri

        with (ro.default_converter + pandas2ri.converter).context():
            return pandas2ri.py2rpy(self.grouping_keys())

    def _random_formulas(self):
        """One random intercept formula per level, as an R list."""
        import rpy2.robjects as ro

        return ro.r["list"](
            *[ro.Formula(f"~ 1 | re_{re.name}") for re in self.spec.random_effects]
        )

    def _fit_r_model(self):
        import rpy2.robjects as ro
        from rpy2.rinterface_lib.embedded import RRuntimeError

        metafor = file_ops.ensure_r_package_imported("metafor")
        kwargs = {
            "yi": ro.FloatVector(self.y),
            "V": ro.FloatVector(self.v),
            "random": self._random_formulas(),
            "data": self._get_r_df(),
            "test": "t",
            "level": self.spec.level * 100,
            "method": "REML",
        }
        mods = self.X[:, 1:] if self.spec.intercept else self.X
        if mods.shape[1]:
            kwargs["mods"] = ro.r.matrix(
                ro.FloatVector(mods.flatten()), nrow=mods.shape[0], byrow=True
            )
        kwargs["intercept"] = self.spec.intercept
        try:
            return metafor.rma_mv(**kwargs)
        except RRuntimeError as e:
            raise ModelConvergenceError(self.spec.name, str(e).strip()) from e

    def fit(self) -> MetaRegressionResult:
        """Fit the model with metafor and wrap the R object as a MetaRegressionResult."""
        import rpy2.robjects as ro

        logger.info(
            f"Fitting '{self.spec.name}' with metafor: {self.spec.formula(self.yi_col)}, "
            f"random = {self.spec.random_formula}, k = {self.k}"
        )
        model = self._fit_r_model()

        def r_vec(name: str) -> np.ndarray:
            return np.asarray(model.rx2(name), dtype=float).ravel()

        beta = r_vec("b")
        vb = np.asarray(model.rx2("vb"), dtype=float).reshape(self.p, self.p)
        sigma2 = r_vec("sigma2")
        fit_stats = np.asarray(
            ro.r('function(m) as.numeric(m$fit.stats[, "REML"])')(model), dtype=float
        )
        dfs = int(r_vec("ddf")[0])
        coefficients = pd.DataFrame(
            {
                "estimate": beta,
                "se": r_vec("se"),
                "tval": r_vec("zval"),
                "df": dfs,
                "pval": r_vec("pval"),
                "ci_lb": r_vec("ci.lb"),
                "ci_ub": r_vec("ci.ub"),
            },
            index=pd.Index(self.term_names, name="term"),
        )
        has_mods = any(name != "intrcpt" for name in self.term_names)
        self.result = MetaRegressionResult(
            spec=self.spec,
            coefficients=coefficients,
            vcov=pd.DataFrame(vb, index=self.term_names, columns=self.term_names),
            sigma2=pd.Series(sigma2, index=self.grouping.names, name="sigma2"),
            n_groups={name: self.grouping.n_groups(name) for name in self.grouping.names},
            k=self.k,
            dfs=dfs,
            loglik=float(fit_stats[0]),
            deviance=float(fit_stats[1]),
            aic=float(fit_stats[2]),
            bic=float(fit_stats[3]),
            aicc=float(fit_stats[4]),
            qe=float(r_vec("QE")[0]),
            qe_pval=float(r_vec("QEp")[0]),
            qm=float(r_vec("QM")[0]) if has_mods else np.nan,
            qm_pval=float(r_vec("QMp")[0]) if has_mods else np.nan,
            i2=self._i_squared(sigma2),
            k_excluded=self.k_excluded,
            engine="metafor",
            data=self.df,
            design=self.X,
        )
        self.fitted = True
        logger.info(f"Model '{self.spec.name}' fitted with metafor.")
        return self.result


def fit_with_metafor(
    df: pd.DataFrame, spec: MetaRegressionSpec, yi: str = "yi", vi: str = "vi"
) -> MetaRegressionResult:
    """Fit a multilevel meta-regression with metafor::rma.mv."""
    return MetaforModel(df, spec, yi=yi, vi=vi).fit()
