"""End-to-end QC pipeline: assembly -> concentration -> correction -> metrics -> filter."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import pandas as pd

from .assembly import DEFAULT_EXTENSION_PATTERN, assemble_long_format
from .concentration import calculate_concentrations, complete_istd_map
from .drift_correction import correct_drift
from .nomenclature import LipidNameResolver
from .qc_filter import QCThresholds, annotate_summary, apply_qc_filter, build_final_table
from .qc_metrics import DEFAULT_CURVE_PATTERN, compute_qc_metrics

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Results from the full QC pipeline."""

    long_data: pd.DataFrame
    corrected_data: pd.DataFrame
    fit_status: pd.DataFrame
    qc_summary: pd.DataFrame
    final_table: pd.DataFrame
    curve_fits: pd.DataFrame
    method_log: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dropped_lipids: list[str] = field(default_factory=list)


def run_pipeline(
    peak_areas: pd.DataFrame,
    istd_map: pd.DataFrame,
    istd_concentrations: pd.DataFrame,
    resolver: LipidNameResolver | None = None,
    curve_annotation: pd.DataFrame | None = None,
    excluded_samples: list[str] | None = None,
    extension_pattern: str = DEFAULT_EXTENSION_PATTERN,
    extra_metadata_columns: list[str] | None = None,
    istd_volume: float = 100.0,
    sample_volume: float = 10.0,
    qc_type: str = 'BQC',
    span: float = 0.75,
    iterations: int = 0,
    min_qc_points: int = 4,
    n_workers: int = 1,
    curve_pattern: str = DEFAULT_CURVE_PATTERN,
    thresholds: QCThresholds | None = None,
) -> PipelineResult:
    """Run all pipeline stages on in-memory tables.

    Args:
        peak_areas: Wide peak-area table in acquisition order
        istd_map: lipid_id -> istd_id, response_factor
        istd_concentrations: istd_id -> concentration_nM
        resolver: Lipid name resolver for class and quantifier flag
        curve_annotation: Optional explicit response-curve annotation
        excluded_samples: Samples to drop before run indices are assigned
        extension_pattern: Regex for file-extension suffixes on sample names
        extra_metadata_columns: Non-lipid columns to carry through
        istd_volume: Spiked ISTD volume
        sample_volume: Sample volume
        qc_type: QC sample type used for drift and batch correction
        span: LOESS span
        iterations: LOESS robustifying iterations
        min_qc_points: Minimum QC points per (lipid, batch) fit
        n_workers: Parallel workers for the LOESS fits
        curve_pattern: Regex for response-curve sample names
        thresholds: QC thresholds

    Returns:
        PipelineResult with every intermediate and final table

    """
    method_log = []
    warnings_log = []

    # Stage 1: long format
    long_data = assemble_long_format(
        peak_areas,
        excluded_samples=excluded_samples,
        extension_pattern=extension_pattern,
        extra_metadata_columns=extra_metadata_columns,
    )
    method_log.append(
        f"Assembled {long_data['sample_id'].nunique()} samples x "
        f"{long_data['lipid_id'].nunique()} lipids"
    )
    if excluded_samples:
        method_log.append(f"Excluded samples: {sorted(excluded_samples)}")

    # Stage 2: ISTD normalization
    conc_result = calculate_concentrations(
        long_data,
        istd_map,
        istd_concentrations,
        istd_volume=istd_volume,
        sample_volume=sample_volume,
    )
    warnings_log.extend(conc_result.warnings)
    method_log.append(
        f"ISTD normalization (istd_volume={istd_volume}, sample_volume={sample_volume}); "
        f"{len(conc_result.dropped_lipids)} unmapped lipids dropped"
    )

    # Stage 3: drift and batch correction
    drift_result = correct_drift(
        conc_result.data,
        qc_type=qc_type,
        span=span,
        iterations=iterations,
        min_qc_points=min_qc_points,
        n_workers=n_workers,
    )
    method_log.extend(drift_result.method_log)

    # Stage 4: QC metrics
    metrics = compute_qc_metrics(
        drift_result.corrected_data,
        curve_pattern=curve_pattern,
        curve_annotation=curve_annotation,
    )
    warnings_log.extend(metrics.warnings)
    method_log.append(f"QC metrics computed ({len(metrics.curve_ids)} response curves)")

    # Stage 5: filter and export
    istd_ids = set(complete_istd_map(istd_map)['istd_id'])
    summary = annotate_summary(metrics.summary, istd_ids, resolver)
    summary = apply_qc_filter(summary, thresholds)
    final_table = build_final_table(drift_result.corrected_data, summary)
    method_log.append(
        f"QC filter: {int(summary['QC_pass'].sum())} of {len(summary)} lipids passed"
    )

    return PipelineResult(
        long_data=long_data,
        corrected_data=drift_result.corrected_data,
        fit_status=drift_result.fit_status,
        qc_summary=summary,
        final_table=final_table,
        curve_fits=metrics.curve_fits,
        method_log=method_log,
        warnings=warnings_log,
        dropped_lipids=conc_result.dropped_lipids,
    )
