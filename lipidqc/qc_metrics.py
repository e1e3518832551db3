"""
Per-lipid QC metrics computed from drift-corrected data.

Metrics (one row per lipid):
- Area_SPL, Conc_SPL: median raw area / corrected concentration of study samples
- SB_ratio: median sample area over median process-blank area
- CV_TQC, CV_BQC, CV_SAMPLE: %CV of corrected concentration per QC type
- CV_BQC_raw: %CV of BQC concentration before drift correction
- D_ratio: SD(BQC) / SD(SAMPLE) of corrected concentration
- R2_RQC<k>, pval_RQC<k>: linear fit of raw area on relative amount for
  response curve k

Missing values are dropped before every aggregation. A metric that cannot be
computed (too few points, zero denominator) is NaN.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.stats import linregress

from .data_io import ConfigurationWarning

logger = logging.getLogger(__name__)

DEFAULT_CURVE_PATTERN = r'RQC[-_]?(?P<curve>\d+)[-_](?P<amount>\d+(?:\.\d+)?)'

CV_QC_TYPES = ['TQC', 'BQC', 'SAMPLE']

# Minimum points for a response-curve regression with a meaningful p-value
MIN_CURVE_POINTS = 3


@dataclass
class QCMetricsResult:
    """Result of QC metric computation.

    Attributes:
        summary: One row per lipid with all metrics
        curve_fits: One row per (lipid, curve) with n_points, slope, r2, pvalue
        curve_ids: Response curve indices found, ascending
        warnings: Reference data problems (e.g. unparseable RQC sample names)
    """
    summary: pd.DataFrame
    curve_fits: pd.DataFrame
    curve_ids: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _stats_by_lipid(data: pd.DataFrame, qc_type: str, value_col: str) -> pd.DataFrame:
    subset = data.loc[data['qc_type'] == qc_type]
    return subset.groupby('lipid_id')[value_col].agg(['median', 'mean', 'std', 'count'])


def _cv_from_stats(stats: pd.DataFrame) -> pd.Series:
    valid = (stats['count'] >= 2) & (stats['mean'] != 0)
    return (100.0 * stats['std'] / stats['mean']).where(valid)


def _safe_ratio(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    ratio = numerator / denominator.where(denominator != 0)
    return ratio.replace([np.inf, -np.inf], np.nan)


def identify_response_curves(
    data: pd.DataFrame,
    pattern: str = DEFAULT_CURVE_PATTERN,
    annotation: pd.DataFrame | None = None,
    qc_type: str = 'RQC',
) -> tuple[pd.DataFrame, list[str]]:
    """Assign curve index and relative amount to response-curve samples.

    An explicit annotation table (sample_id, curve, relative_amount) takes
    precedence; otherwise both values are parsed from the sample name using
    ``pattern``, which must define the named groups ``curve`` and ``amount``.

    Returns:
        Tuple of (DataFrame with sample_id, curve, relative_amount; list of
        warning messages)

    """
    messages = []
    samples = pd.Series(
        data.loc[data['qc_type'] == qc_type, 'sample_id'].unique(), dtype=object
    )
    empty = pd.DataFrame(columns=['sample_id', 'curve', 'relative_amount'])
    if samples.empty:
        return empty, messages

    if annotation is not None:
        curves = annotation.loc[annotation['sample_id'].isin(samples),
                                ['sample_id', 'curve', 'relative_amount']].copy()
        unannotated = sorted(set(samples) - set(curves['sample_id']))
    else:
        parsed = samples.str.extract(pattern)
        curves = pd.DataFrame({
            'sample_id': samples,
            'curve': parsed['curve'],
            'relative_amount': parsed['amount'],
        }).dropna(subset=['curve', 'relative_amount'])
        unannotated = sorted(set(samples) - set(curves['sample_id']))

    if unannotated:
        messages.append(
            f"{len(unannotated)} {qc_type} samples without curve assignment: {unannotated}"
        )

    curves['curve'] = pd.to_numeric(curves['curve'], errors='coerce')
    curves['relative_amount'] = pd.to_numeric(curves['relative_amount'], errors='coerce')
    curves = curves.dropna(subset=['curve', 'relative_amount'])
    curves['curve'] = curves['curve'].astype(int)
    return curves.reset_index(drop=True), messages


def fit_response_curve(relative_amount, area) -> tuple[float, float, float]:
    """Linear regression of area on relative amount.

    Returns:
        Tuple of (slope, r_squared, p_value); all NaN when fewer than
        MIN_CURVE_POINTS finite pairs remain or either axis is constant

    """
    x = np.asarray(relative_amount, dtype=float)
    y = np.asarray(area, dtype=float)
    mask = np.isfinite(x) & np.isfinite(y)
    x, y = x[mask], y[mask]

    if len(x) < MIN_CURVE_POINTS or np.ptp(x) == 0 or np.ptp(y) == 0:
        return np.nan, np.nan, np.nan

    fit = linregress(x, y)
    return float(fit.slope), float(fit.rvalue ** 2), float(fit.pvalue)


def compute_curve_fits(data: pd.DataFrame, curves: pd.DataFrame) -> pd.DataFrame:
    """Fit every (lipid, curve) response series on raw area."""
    columns = ['lipid_id', 'curve', 'n_points', 'slope', 'r2', 'pvalue']
    if curves.empty:
        return pd.DataFrame(columns=columns)

    rqc = data[['sample_id', 'lipid_id', 'area']].merge(curves, on='sample_id', how='inner')
    rows = []
    for (lipid, curve), group in rqc.groupby(['lipid_id', 'curve'], sort=True):
        slope, r2, pvalue = fit_response_curve(group['relative_amount'], group['area'])
        n_points = int((group['area'].notna() & group['relative_amount'].notna()).sum())
        rows.append({
            'lipid_id': lipid,
            'curve': curve,
            'n_points': n_points,
            'slope': slope,
            'r2': r2,
            'pvalue': pvalue,
        })
    return pd.DataFrame(rows, columns=columns)


def pivot_curve_fits(curve_fits: pd.DataFrame) -> pd.DataFrame:
    """Spread per-curve R2 and p-value into R2_RQC<k> / pval_RQC<k> columns."""
    if curve_fits.empty:
        return pd.DataFrame(index=pd.Index([], name='lipid_id'))

    wide = curve_fits.pivot(index='lipid_id', columns='curve', values=['r2', 'pvalue'])
    out = pd.DataFrame(index=wide.index)
    for curve in sorted(curve_fits['curve'].unique()):
        out[f'R2_RQC{curve}'] = wide[('r2', curve)]
        out[f'pval_RQC{curve}'] = wide[('pvalue', curve)]
    return out


def compute_qc_metrics(
    data: pd.DataFrame,
    value_col: str = 'concentration_corrected',
    raw_value_col: str = 'concentration',
    curve_pattern: str = DEFAULT_CURVE_PATTERN,
    curve_annotation: pd.DataFrame | None = None,
) -> QCMetricsResult:
    """Compute per-lipid QC metrics.

    Args:
        data: Corrected long table (output of correct_drift)
        value_col: Corrected concentration column
        raw_value_col: Concentration column before drift correction
        curve_pattern: Regex with ``curve`` and ``amount`` groups for RQC names
        curve_annotation: Optional explicit curve table, overrides the pattern

    Returns:
        QCMetricsResult with the per-lipid summary

    """
    messages = []
    lipids = pd.Index(sorted(data['lipid_id'].unique()), name='lipid_id')
    summary = pd.DataFrame(index=lipids)

    spl = data.loc[data['qc_type'] == 'SAMPLE']
    summary['Area_SPL'] = spl.groupby('lipid_id')['area'].median()
    summary['Conc_SPL'] = spl.groupby('lipid_id')[value_col].median()
    summary['n_SAMPLE'] = spl.groupby('lipid_id')[value_col].count()
    summary['n_SAMPLE'] = summary['n_SAMPLE'].fillna(0).astype(int)

    blank_area = data.loc[data['qc_type'] == 'PBLK'].groupby('lipid_id')['area'].median()
    if blank_area.empty:
        messages.append("No PBLK samples - SB_ratio is missing for all lipids")
    summary['Area_PBLK'] = blank_area
    summary['SB_ratio'] = _safe_ratio(summary['Area_SPL'], summary['Area_PBLK'])

    stats = {qc_type: _stats_by_lipid(data, qc_type, value_col) for qc_type in CV_QC_TYPES}
    for qc_type in CV_QC_TYPES:
        summary[f'CV_{qc_type}'] = _cv_from_stats(stats[qc_type])

    summary['CV_BQC_raw'] = _cv_from_stats(_stats_by_lipid(data, 'BQC', raw_value_col))
    summary['D_ratio'] = _safe_ratio(stats['BQC']['std'], stats['SAMPLE']['std'])

    curves, curve_messages = identify_response_curves(
        data, pattern=curve_pattern, annotation=curve_annotation
    )
    messages.extend(curve_messages)
    curve_fits = compute_curve_fits(data, curves)
    if curve_fits.empty:
        messages.append("No response curve data - curve R2 is missing for all lipids")
    else:
        no_fit = curve_fits.groupby('lipid_id')['r2'].apply(lambda r: r.isna().all())
        if no_fit.any():
            logger.info(f"{int(no_fit.sum())} lipids without a usable response-curve fit")
    summary = summary.join(pivot_curve_fits(curve_fits))

    for message in messages:
        logger.warning(message)
        warnings.warn(message, ConfigurationWarning, stacklevel=2)

    curve_ids = sorted(int(c) for c in curve_fits['curve'].unique()) if not curve_fits.empty else []
    logger.info(f"Computed QC metrics for {len(summary)} lipids ({len(curve_ids)} response curves)")

    return QCMetricsResult(
        summary=summary.reset_index(),
        curve_fits=curve_fits,
        curve_ids=curve_ids,
        warnings=messages,
    )
