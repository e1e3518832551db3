"""
lipidqc: quality-control post-processing for targeted lipidomics

Converts chromatographic peak areas into QC-filtered, drift-corrected lipid
concentrations: ISTD normalization, LOESS drift correction on batch QC
samples, between-batch alignment and per-lipid QC scoring.
"""

__version__ = "0.1.0"

from .data_io import (
    ConfigurationWarning,
    DataImportError,
    load_istd_concentrations,
    load_istd_map,
    load_lipid_metadata,
    load_peak_areas,
    validate_peak_area_table,
)
from .assembly import (
    assemble_long_format,
    strip_file_extension,
)
from .concentration import (
    calculate_concentrations,
    ConcentrationResult,
)
from .drift_correction import (
    correct_drift,
    fit_qc_trend,
    align_batches_to_qc,
    scale_to_global_qc_median,
    DriftCorrectionResult,
    TrendFit,
)
from .qc_metrics import (
    compute_qc_metrics,
    fit_response_curve,
    QCMetricsResult,
)
from .qc_filter import (
    QCThresholds,
    annotate_summary,
    apply_qc_filter,
    build_final_table,
    final_table_to_long,
)
from .nomenclature import (
    LipidNameResolver,
    TableLipidResolver,
)
from .pipeline import (
    run_pipeline,
    PipelineResult,
)
