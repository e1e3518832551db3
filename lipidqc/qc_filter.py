"""QC pass/fail rules and export of the final concentration table."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields

import pandas as pd

from .nomenclature import RESOLVED_COLUMNS, LipidNameResolver

logger = logging.getLogger(__name__)

_R2_COLUMN = re.compile(r'^R2_RQC(\d+)$')


@dataclass
class QCThresholds:
    """Thresholds for the per-lipid QC decision.

    A lipid passes when
        (CV_BQC < cv_bqc_max OR (CV_BQC < cv_bqc_relaxed_max AND D_ratio < d_ratio_max))
        AND SB_ratio > sb_ratio_min
        AND first-curve R2 > r2_min
        AND it is the quantifier transition AND not an internal standard.
    """
    cv_bqc_max: float = 25.0
    cv_bqc_relaxed_max: float = 50.0
    d_ratio_max: float = 0.5
    sb_ratio_min: float = 3.0
    r2_min: float = 0.8

    @classmethod
    def from_config(cls, config: dict) -> QCThresholds:
        """Build thresholds from the qc_filter config section.

        Raises:
            ValueError: On unknown keys or non-numeric values

        """
        config = config or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(str(key) for key in config if key not in known)
        if unknown:
            raise ValueError(f"Unknown qc_filter settings: {unknown}. Expected: {sorted(known)}")
        try:
            return cls(**{key: float(value) for key, value in config.items()})
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid qc_filter value: {e}") from e



def first_curve_r2_column(summary: pd.DataFrame) -> str | None:
    """Name of the R2 column of the lowest-numbered response curve."""
    matches = []
    for col in summary.columns:
        m = _R2_COLUMN.match(str(col))
        if m:
            matches.append((int(m.group(1)), col))
    return min(matches)[1] if matches else None


def annotate_summary(
    summary: pd.DataFrame,
    istd_ids: set[str] | list[str],
    resolver: LipidNameResolver | None = None,
) -> pd.DataFrame:
    """Add lipid_class, standardized_name, is_quantifier and is_istd columns.

    Without a resolver every lipid is treated as its quantifier transition.
    """
    annotated = summary.copy()
    names = annotated['lipid_id'].tolist()

    if resolver is None:
        logger.info("No lipid metadata - treating every lipid as a quantifier")
        attributes = pd.DataFrame(index=pd.Index(names, name='lipid_id'))
        attributes['lipid_class'] = pd.NA
        attributes['standardized_name'] = pd.NA
        attributes['is_quantifier'] = True
    else:
        attributes = resolver.resolve(names)

    annotated = annotated.drop(columns=[c for c in RESOLVED_COLUMNS if c in annotated.columns])
    annotated = annotated.merge(
        attributes[RESOLVED_COLUMNS].reset_index(), on='lipid_id', how='left'
    )
    annotated['is_quantifier'] = annotated['is_quantifier'].fillna(False).astype(bool)
    annotated['is_istd'] = annotated['lipid_id'].isin(set(istd_ids))
    return annotated


def apply_qc_filter(
    summary: pd.DataFrame,
    thresholds: QCThresholds | None = None,
    r2_col: str | None = None,
) -> pd.DataFrame:
    """Flag each lipid as passing or failing QC.

    Missing metrics fail the criterion they are tested in.

    Args:
        summary: Annotated QC summary (compute_qc_metrics + annotate_summary)
        thresholds: QC thresholds (defaults if None)
        r2_col: R2 column to test; defaults to the first response curve

    Returns:
        Copy of the summary with pass_CV, pass_SB, pass_R2 and QC_pass columns

    """
    if thresholds is None:
        thresholds = QCThresholds()

    result = summary.copy()
    if r2_col is None:
        r2_col = first_curve_r2_column(result)

    cv_bqc = result['CV_BQC']
    result['pass_CV'] = (cv_bqc < thresholds.cv_bqc_max) | (
        (cv_bqc < thresholds.cv_bqc_relaxed_max) & (result['D_ratio'] < thresholds.d_ratio_max)
    )
    result['pass_SB'] = result['SB_ratio'] > thresholds.sb_ratio_min

    if r2_col is None or r2_col not in result.columns:
        logger.warning("No response curve R2 available - all lipids fail the linearity criterion")
        result['pass_R2'] = False
    else:
        result['pass_R2'] = result[r2_col] > thresholds.r2_min

    is_quantifier = result.get('is_quantifier', pd.Series(False, index=result.index))
    is_istd = result.get('is_istd', pd.Series(False, index=result.index))
    candidate = is_quantifier.fillna(False).astype(bool) & ~is_istd.fillna(False).astype(bool)

    result['QC_pass'] = result['pass_CV'] & result['pass_SB'] & result['pass_R2'] & candidate

    n_candidates = int(candidate.sum())
    logger.info(
        f"QC filter: {int(result['QC_pass'].sum())} of {n_candidates} quantifier lipids passed "
        f"(CV {int(result['pass_CV'].sum())}, S/B {int(result['pass_SB'].sum())}, "
        f"R2 {int(result['pass_R2'].sum())})"
    )
    return result


def build_final_table(
    corrected_data: pd.DataFrame,
    qc_summary: pd.DataFrame,
    value_col: str = 'concentration_corrected',
) -> pd.DataFrame:
    """Wide table of SAMPLE concentrations for lipids that passed QC.

    Rows are samples in run order, columns are passing lipids. Lipids absent
    from the summary never appear.
    """
    passing = set(qc_summary.loc[qc_summary['QC_pass'].astype(bool), 'lipid_id'])
    subset = corrected_data.loc[
        (corrected_data['qc_type'] == 'SAMPLE') & corrected_data['lipid_id'].isin(passing)
    ]

    sample_order = (
        corrected_data.loc[corrected_data['qc_type'] == 'SAMPLE', ['sample_id', 'run_index']]
        .drop_duplicates('sample_id')
        .sort_values('run_index')['sample_id']
    )
    lipid_order = [lipid for lipid in qc_summary['lipid_id'] if lipid in passing]

    wide = subset.pivot(index='sample_id', columns='lipid_id', values=value_col)
    wide = wide.reindex(index=sample_order, columns=lipid_order)
    wide.index.name = 'sample_id'
    wide.columns.name = None

    logger.info(f"Final table: {wide.shape[0]} samples x {wide.shape[1]} lipids")
    return wide


def final_table_to_long(final_table: pd.DataFrame, value_col: str = 'concentration_corrected') -> pd.DataFrame:
    """Melt a final wide table back to (sample_id, lipid_id, value) rows."""
    long = final_table.reset_index().melt(
        id_vars='sample_id', var_name='lipid_id', value_name=value_col
    )
    return long
