"""
Within-batch drift correction and between-batch alignment.

Signal drift over an analytical run is estimated from batch QC (BQC) samples,
which are the same pooled material injected at regular intervals:

1. Within-batch smoothing: per (lipid, batch), a LOESS curve is fitted to
   log2 concentration of the BQC injections against run index and predicted
   at every injection of the batch. The trend is centered on its median so
   only the relative drift is removed.
2. Between-batch alignment, pass 1: per (lipid, batch), values are divided by
   the median BQC value so every batch has a BQC median of 1.
3. Between-batch alignment, pass 2: per lipid, values are multiplied by the
   median BQC value across all batches, restoring the absolute scale.

Groups without enough BQC data produce missing values for that group only.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

logger = logging.getLogger(__name__)

GROUP_COLS = ['lipid_id', 'batch']

FIT_OK = 'ok'
FIT_INSUFFICIENT_DATA = 'insufficient_data'
FIT_FAILED = 'fit_failed'


@dataclass
class TrendFit:
    """Outcome of a LOESS trend fit for one (lipid, batch) group.

    ``trend`` has one entry per run index passed in. It is all-NaN unless
    ``status`` is 'ok'.
    """
    trend: np.ndarray
    status: str
    n_qc: int

    @property
    def ok(self) -> bool:
        return self.status == FIT_OK


@dataclass
class DriftCorrectionResult:
    """Result of drift and batch correction.

    Attributes:
        corrected_data: Long table with log2_concentration, trend_log2,
            concentration_adjusted, concentration_batch_scaled and
            concentration_corrected columns added
        fit_status: One row per (lipid, batch) with n_qc and status
        method_log: List of processing steps
    """
    corrected_data: pd.DataFrame
    fit_status: pd.DataFrame
    method_log: list[str] = field(default_factory=list)


def fit_qc_trend(
    run_index: np.ndarray,
    log2_values: np.ndarray,
    is_qc: np.ndarray,
    span: float = 0.75,
    iterations: int = 0,
    min_qc_points: int = 4,
) -> TrendFit:
    """Fit a LOESS trend through QC points and predict it at every run index.

    Between fitted QC positions the trend is linearly interpolated; before the
    first and after the last QC injection it is held constant.

    Args:
        run_index: Run index of every injection in the group
        log2_values: log2 concentration of every injection (NaN allowed)
        is_qc: Boolean mask selecting the QC injections used for the fit
        span: Fraction of QC points used for each local fit
        iterations: Robustifying iterations (0 = plain weighted least squares)
        min_qc_points: Minimum number of finite QC values required

    Returns:
        TrendFit with the predicted trend

    """
    run_index = np.asarray(run_index, dtype=float)
    log2_values = np.asarray(log2_values, dtype=float)
    is_qc = np.asarray(is_qc, dtype=bool)

    missing = np.full(run_index.shape, np.nan)
    usable = is_qc & np.isfinite(log2_values) & np.isfinite(run_index)
    n_qc = int(usable.sum())

    if n_qc < max(min_qc_points, 2):
        return TrendFit(trend=missing, status=FIT_INSUFFICIENT_DATA, n_qc=n_qc)

    x = run_index[usable]
    y = log2_values[usable]

    try:
        with np.errstate(all='ignore'):
            fitted = lowess(y, x, frac=span, it=iterations, return_sorted=True)
    except (ValueError, ZeroDivisionError, np.linalg.LinAlgError) as e:
        logger.debug(f"LOESS fit failed: {e}")
        return TrendFit(trend=missing, status=FIT_FAILED, n_qc=n_qc)

    if fitted.ndim != 2 or not np.all(np.isfinite(fitted[:, 1])):
        return TrendFit(trend=missing, status=FIT_FAILED, n_qc=n_qc)

    trend = np.interp(run_index, fitted[:, 0], fitted[:, 1])
    return TrendFit(trend=trend, status=FIT_OK, n_qc=n_qc)


def _fit_group(
    task: tuple[tuple, np.ndarray, np.ndarray, np.ndarray, np.ndarray, dict],
) -> tuple[tuple, np.ndarray, np.ndarray, str, int]:
    """Fit one (lipid, batch) group. Top-level so it can be pickled."""
    key, index, run_index, log2_values, is_qc, params = task
    fit = fit_qc_trend(run_index, log2_values, is_qc, **params)
    return key, index, fit.trend, fit.status, fit.n_qc


def _build_tasks(
    data: pd.DataFrame,
    qc_type: str,
    params: dict,
) -> list[tuple]:
    tasks = []
    for key, group in data.groupby(GROUP_COLS, sort=True):
        tasks.append((
            key,
            group.index.to_numpy(),
            group['run_index'].to_numpy(dtype=float),
            group['log2_concentration'].to_numpy(dtype=float),
            (group['qc_type'] == qc_type).to_numpy(),
            params,
        ))
    return tasks


def estimate_within_batch_trend(
    data: pd.DataFrame,
    qc_type: str = 'BQC',
    span: float = 0.75,
    iterations: int = 0,
    min_qc_points: int = 4,
    n_workers: int = 1,
) -> tuple[pd.Series, pd.DataFrame]:
    """Fit the QC trend for every (lipid, batch) group.

    Args:
        data: Long table with lipid_id, batch, run_index, qc_type and
            log2_concentration columns
        qc_type: QC sample type used as the drift reference
        span: LOESS span
        iterations: LOESS robustifying iterations
        min_qc_points: Minimum finite QC values per group
        n_workers: Parallel worker processes (0 = all CPUs)

    Returns:
        Tuple of (uncentered trend aligned to data.index, fit status table)

    """
    params = {'span': span, 'iterations': iterations, 'min_qc_points': min_qc_points}
    tasks = _build_tasks(data, qc_type, params)

    n_workers = n_workers if n_workers > 0 else mp.cpu_count()
    outputs = []
    if n_workers == 1 or len(tasks) < 2:
        outputs = [_fit_group(task) for task in tasks]
    else:
        logger.info(f"  Fitting {len(tasks)} groups with {n_workers} workers")
        with ProcessPoolExecutor(max_workers=min(n_workers, len(tasks))) as executor:
            futures = [executor.submit(_fit_group, task) for task in tasks]
            for future in as_completed(futures):
                outputs.append(future.result())

    trend = pd.Series(np.nan, index=data.index, dtype=float)
    status_rows = []
    for key, index, group_trend, status, n_qc in outputs:
        trend.loc[index] = group_trend
        status_rows.append({'lipid_id': key[0], 'batch': key[1], 'n_qc': n_qc, 'status': status})

    fit_status = pd.DataFrame(status_rows, columns=['lipid_id', 'batch', 'n_qc', 'status'])
    if not fit_status.empty:
        fit_status = fit_status.sort_values(GROUP_COLS, kind='stable').reset_index(drop=True)
    return trend, fit_status


def center_trend(data: pd.DataFrame, trend: pd.Series) -> pd.Series:
    """Subtract the per-(lipid, batch) median of the trend, ignoring NaN."""
    median = trend.groupby([data[c] for c in GROUP_COLS]).transform('median')
    return trend - median


def _qc_median(
    data: pd.DataFrame,
    value_col: str,
    group_cols: list[str],
    qc_type: str,
) -> pd.Series:
    """Per-group median of QC values broadcast to every row; 0 becomes NaN."""
    qc_values = data[value_col].where(data['qc_type'] == qc_type)
    median = qc_values.groupby([data[c] for c in group_cols]).transform('median')
    return median.where(median != 0)


def align_batches_to_qc(
    data: pd.DataFrame,
    value_col: str,
    qc_type: str = 'BQC',
) -> pd.Series:
    """Divide each (lipid, batch) group by the median of its QC values.

    Afterwards every batch has a QC median of 1. Groups without QC values get
    NaN. Applying this to already aligned values leaves them unchanged.
    """
    return data[value_col] / _qc_median(data, value_col, GROUP_COLS, qc_type)


def scale_to_global_qc_median(
    data: pd.DataFrame,
    value_col: str,
    reference_col: str,
    qc_type: str = 'BQC',
) -> pd.Series:
    """Multiply values by the per-lipid median of QC ``reference_col`` values
    taken across all batches."""
    return data[value_col] * _qc_median(data, reference_col, ['lipid_id'], qc_type)


def correct_drift(
    data: pd.DataFrame,
    qc_type: str = 'BQC',
    span: float = 0.75,
    iterations: int = 0,
    min_qc_points: int = 4,
    n_workers: int = 1,
) -> DriftCorrectionResult:
    """Apply LOESS drift correction and two-pass batch alignment.

    Args:
        data: Long table with concentration (output of calculate_concentrations)
        qc_type: QC sample type used as reference
        span: LOESS span (fraction of QC points per local fit)
        iterations: LOESS robustifying iterations
        min_qc_points: Minimum finite QC values to attempt a fit
        n_workers: Parallel worker processes for the per-group fits

    Returns:
        DriftCorrectionResult with corrected concentrations

    """
    method_log = []
    df = data.sort_values(GROUP_COLS + ['run_index'], kind='stable').reset_index(drop=True)

    concentration = df['concentration'].astype(float)
    with np.errstate(divide='ignore', invalid='ignore'):
        df['log2_concentration'] = np.log2(concentration.where(concentration > 0))

    logger.info(
        f"Fitting LOESS drift trends (span={span}) for "
        f"{df['lipid_id'].nunique()} lipids x {df['batch'].nunique()} batches"
    )
    trend, fit_status = estimate_within_batch_trend(
        df,
        qc_type=qc_type,
        span=span,
        iterations=iterations,
        min_qc_points=min_qc_points,
        n_workers=n_workers,
    )
    df['trend_log2'] = center_trend(df, trend)
    df['concentration_adjusted'] = np.power(2.0, df['log2_concentration'] - df['trend_log2'])

    n_failed = int((fit_status['status'] != FIT_OK).sum()) if not fit_status.empty else 0
    method_log.append(
        f"Within-batch LOESS on {qc_type} (span={span}, iterations={iterations}): "
        f"{len(fit_status) - n_failed} groups fitted, {n_failed} without trend"
    )
    if n_failed:
        logger.warning(f"{n_failed} lipid/batch groups could not be fitted - values set to missing")

    df['concentration_batch_scaled'] = align_batches_to_qc(df, 'concentration_adjusted', qc_type)
    method_log.append(f"Between-batch alignment: per-batch {qc_type} median scaled to 1")

    df['concentration_corrected'] = scale_to_global_qc_median(
        df, 'concentration_batch_scaled', 'concentration_adjusted', qc_type
    )
    method_log.append(f"Between-batch alignment: rescaled to global {qc_type} median per lipid")

    df = df.sort_values(['run_index', 'lipid_id'], kind='stable').reset_index(drop=True)
    n_valid = int(df['concentration_corrected'].notna().sum())
    logger.info(f"Drift correction complete: {n_valid}/{len(df)} corrected values")

    return DriftCorrectionResult(
        corrected_data=df,
        fit_status=fit_status,
        method_log=method_log,
    )
