"""
bikeshare_analysis/inference.py

Hypothesis tests over the cleaned trip frame:
- welch_ttest: two-sample mean comparison, unequal variances
- categorical_ols: response ~ one treatment-coded categorical predictor
- two_way_anova: response ~ A * B, sequential (Type I) sums of squares

Statistics are computed from their closed forms; scipy.stats only
supplies the t and F distributions. Each test either returns a complete
result or raises an AnalysisError subclass.
"""
import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

import bikeshare_analysis.data_contract as dc
from bikeshare_analysis.errors import DegenerateDistributionError, InsufficientDataError
from bikeshare_analysis.records import AnovaResult, EffectRow, RegressionResult, TTestResult

logger = logging.getLogger(__name__)

CONFIDENCE_LEVEL = 0.95
INTERCEPT = "Intercept"


def _two_sided_p(t_stat: float, dof: float) -> float:
    return float(2.0 * stats.t.sf(abs(t_stat), dof))


# -------------------------------------------------------------------
# Welch t-test
# -------------------------------------------------------------------

def welch_ttest(
    df: pd.DataFrame,
    group_field: str = "rider_type",
    value_field: str = dc.DURATION_COLUMN,
    groups: Tuple[str, str] = ("member", "casual"),
) -> TTestResult:
    """mean_diff is mean(groups[0]) - mean(groups[1])."""
    g1, g2 = groups
    if g1 == g2:
        raise ValueError(f"Welch's t-test needs two distinct groups, got {groups}")

    samples = {}
    for name in (g1, g2):
        x = df.loc[df[group_field] == name, value_field].to_numpy(dtype="float64")
        if len(x) < 2:
            raise InsufficientDataError(
                f"Group '{name}' has {len(x)} observations; Welch's t-test needs at least 2."
            )
        samples[name] = x

    n1, n2 = len(samples[g1]), len(samples[g2])
    m1, m2 = float(samples[g1].mean()), float(samples[g2].mean())
    v1, v2 = float(samples[g1].var(ddof=1)), float(samples[g2].var(ddof=1))

    a, b = v1 / n1, v2 / n2
    se_sq = a + b
    if se_sq == 0:
        raise DegenerateDistributionError(
            f"Both '{g1}' and '{g2}' have zero variance in {value_field}; t is undefined."
        )

    se = math.sqrt(se_sq)
    mean_diff = m1 - m2
    t_stat = mean_diff / se
    dof = se_sq ** 2 / (a ** 2 / (n1 - 1) + b ** 2 / (n2 - 1))

    crit = float(stats.t.ppf((1 + CONFIDENCE_LEVEL) / 2, dof))
    result = TTestResult(
        groups=(g1, g2),
        mean_diff=mean_diff,
        conf_interval_95=(mean_diff - crit * se, mean_diff + crit * se),
        t_statistic=t_stat,
        degrees_of_freedom=dof,
        p_value=_two_sided_p(t_stat, dof),
        group_means={g1: m1, g2: m2},
        group_variances={g1: v1, g2: v2},
        group_counts={g1: n1, g2: n2},
    )
    logger.info(
        f"Welch t-test {g1} vs {g2}: diff={mean_diff:.3f}, t={t_stat:.4f}, "
        f"df={dof:.1f}, p={result.p_value:.4g}"
    )
    return result


# -------------------------------------------------------------------
# Categorical OLS
# -------------------------------------------------------------------

def default_reference(predictor: str, levels: Sequence) -> str:
    """First contract level present, else the first level seen."""
    for level in dc.CATEGORICAL_DOMAINS.get(predictor, []):
        if level in levels:
            return level
    return levels[0]


def categorical_ols(
    df: pd.DataFrame,
    predictor: str = "rider_type",
    response: str = dc.DURATION_COLUMN,
    reference: Optional[str] = None,
    levels: Optional[Sequence[str]] = None,
) -> RegressionResult:
    """
    With treatment coding and a single categorical predictor the OLS
    solution is the group means: intercept is the reference mean and
    each coefficient is that level's mean minus the reference mean.
    Passing levels restricts the fit to those levels; each must be observed.
    """
    observed = list(pd.unique(df[predictor]))
    if levels is None:
        levels = observed
        data = df
    else:
        levels = list(levels)
        missing = [lvl for lvl in levels if lvl not in observed]
        if missing:
            raise InsufficientDataError(f"Levels of {predictor} with no observations: {missing}")
        data = df[df[predictor].isin(levels)]

    if len(levels) < 2:
        raise InsufficientDataError(
            f"{predictor} has {len(levels)} distinct level(s); regression needs at least 2."
        )

    if reference is None:
        reference = default_reference(predictor, levels)
    elif reference not in levels:
        raise InsufficientDataError(f"Reference level '{reference}' has no observations in {predictor}")

    y = data[response].astype("float64")
    x = data[predictor]
    n_obs, k = len(y), len(levels)
    df_resid = n_obs - k
    if df_resid < 1:
        raise InsufficientDataError(
            f"{n_obs} observations for {k} parameters leaves no residual degrees of freedom."
        )

    grouped = y.groupby(x, sort=False, observed=True)
    counts = grouped.size()
    means = grouped.sum() / counts

    tss = float(((y - y.mean()) ** 2).sum())
    if tss == 0:
        raise DegenerateDistributionError(f"{response} is constant; R-squared is undefined.")

    rss = float(((y - x.map(means).astype("float64")) ** 2).sum())
    if rss == 0:
        raise DegenerateDistributionError(
            f"{response} is constant within every level of {predictor}; standard errors are zero."
        )

    sigma2 = rss / df_resid
    intercept = float(means[reference])
    n_ref = int(counts[reference])

    coefficients = {}
    std_errors = {INTERCEPT: math.sqrt(sigma2 / n_ref)}
    for lvl in levels:
        if lvl == reference:
            continue
        coefficients[str(lvl)] = float(means[lvl]) - intercept
        std_errors[str(lvl)] = math.sqrt(sigma2 * (1.0 / int(counts[lvl]) + 1.0 / n_ref))

    estimates = {INTERCEPT: intercept, **coefficients}
    t_statistics = {name: est / std_errors[name] for name, est in estimates.items()}
    p_values = {name: _two_sided_p(t, df_resid) for name, t in t_statistics.items()}

    result = RegressionResult(
        predictor=predictor,
        reference_level=str(reference),
        intercept=intercept,
        coefficients=coefficients,
        r_squared=1.0 - rss / tss,
        std_errors=std_errors,
        t_statistics=t_statistics,
        p_values=p_values,
        df_resid=df_resid,
        n_obs=n_obs,
    )
    logger.info(
        f"OLS {response} ~ {predictor} (ref={reference}): coefficients={coefficients}, "
        f"R2={result.r_squared:.4f}"
    )
    return result


# -------------------------------------------------------------------
# Two-way ANOVA
# -------------------------------------------------------------------

def _rss(y: np.ndarray, fitted) -> float:
    return float(((y - np.asarray(fitted, dtype="float64")) ** 2).sum())


def _additive_rss(data: pd.DataFrame, factors: List[str], y: np.ndarray) -> float:
    dummies = pd.get_dummies(data[factors].astype(str), drop_first=True, dtype="float64")
    design = np.column_stack([np.ones(len(y)), dummies.to_numpy()])
    coef, *_ = np.linalg.lstsq(design, y, rcond=None)
    return _rss(y, design @ coef)


def two_way_anova(
    df: pd.DataFrame,
    factor_a: str = "rider_type",
    factor_b: str = "rideable_type",
    response: str = dc.DURATION_COLUMN,
) -> AnovaResult:
    """
    Sequential decomposition in the order A, B, A:B:
        SS_A   = RSS(1)   - RSS(A)
        SS_B   = RSS(A)   - RSS(A + B)
        SS_AB  = RSS(A+B) - RSS(A * B)
    RSS(A * B) is the within-cell sum of squares. With unbalanced cells
    the split between A and B depends on the order. Every A x B cell
    must be observed.
    """
    a_levels = list(pd.unique(df[factor_a]))
    b_levels = list(pd.unique(df[factor_b]))
    for name, lv in ((factor_a, a_levels), (factor_b, b_levels)):
        if len(lv) < 2:
            raise InsufficientDataError(f"{name} has {len(lv)} level(s); ANOVA needs at least 2.")

    cell_counts = df.groupby([factor_a, factor_b], sort=False, observed=True).size()
    empty_cells = [(i, j) for i in a_levels for j in b_levels if (i, j) not in cell_counts.index]
    if empty_cells:
        raise InsufficientDataError(
            f"Empty {factor_a} x {factor_b} cells {empty_cells}; "
            f"the interaction term is not estimable."
        )

    y = df[response].to_numpy(dtype="float64")
    n_obs = len(y)
    df_a = len(a_levels) - 1
    df_b = len(b_levels) - 1
    df_ab = df_a * df_b
    df_resid = n_obs - len(a_levels) * len(b_levels)
    if df_resid < 1:
        raise InsufficientDataError(
            f"{n_obs} observations over {len(cell_counts)} cells leaves no residual degrees of freedom."
        )

    tss = _rss(y, np.full(n_obs, y.mean()))
    rss_a = _rss(y, df.groupby(factor_a, sort=False, observed=True)[response].transform("mean"))
    rss_add = _additive_rss(df, [factor_a, factor_b], y)
    rss_full = _rss(
        y, df.groupby([factor_a, factor_b], sort=False, observed=True)[response].transform("mean")
    )

    ms_resid = rss_full / df_resid
    if ms_resid == 0:
        raise DegenerateDistributionError(
            f"{response} is constant within every cell; F statistics are undefined."
        )

    # lstsq round-off can push a zero effect slightly negative
    sums = {
        factor_a: (df_a, max(tss - rss_a, 0.0)),
        factor_b: (df_b, max(rss_a - rss_add, 0.0)),
        f"{factor_a}:{factor_b}": (df_ab, max(rss_add - rss_full, 0.0)),
    }

    effects = {}
    for name, (dof, ss) in sums.items():
        ms = ss / dof
        f_stat = ms / ms_resid
        effects[name] = EffectRow(
            df=dof,
            sum_sq=ss,
            mean_sq=ms,
            f_statistic=f_stat,
            p_value=float(stats.f.sf(f_stat, dof, df_resid)),
        )
        logger.info(f"ANOVA {name}: F={f_stat:.4f}, p={effects[name].p_value:.4g}")

    return AnovaResult(
        factors=(factor_a, factor_b),
        factor_effects=effects,
        residual_df=df_resid,
        residual_sum_sq=rss_full,
        n_obs=n_obs,
    )
