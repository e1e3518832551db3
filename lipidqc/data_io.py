"""Data I/O module for loading peak-area tables and reference data."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)

# Required metadata columns in the wide peak-area table
METADATA_REQUIRED = ['sample_id', 'qc_type', 'batch']

VALID_QC_TYPES = {'SAMPLE', 'BQC', 'TQC', 'PBLK', 'SBLK', 'RQC'}
QC_TYPE_ALIASES = {'SPL': 'SAMPLE'}

# Alternative column names seen in instrument/export tables
COLUMN_ALIASES = {
    'Sample Name': 'sample_id',
    'SampleName': 'sample_id',
    'Data File': 'sample_id',
    'QC Type': 'qc_type',
    'QCType': 'qc_type',
    'Sample Type': 'qc_type',
    'Batch': 'batch',
    'Batch Name': 'batch',
    'Compound': 'lipid_id',
    'Lipid': 'lipid_id',
    'ISTD': 'istd_id',
    'Response Factor': 'response_factor',
    'RF': 'response_factor',
    'Class': 'class',
}

ISTD_MAP_REQUIRED = ['lipid_id', 'istd_id']
ISTD_CONC_REQUIRED = ['istd_id', 'concentration_nM']
LIPID_METADATA_REQUIRED = ['lipid_id']
CURVE_ANNOTATION_REQUIRED = ['sample_id', 'curve', 'relative_amount']


class DataImportError(ValueError):
    """Structural problem in an input table (missing columns, bad types)."""


class ConfigurationWarning(UserWarning):
    """Reference data does not cover part of the input (e.g. unmapped lipid)."""


@dataclass
class ValidationResult:
    """Result of validating a wide peak-area table."""

    is_valid: bool
    filepath: Path
    missing_required: list[str] = field(default_factory=list)
    invalid_qc_types: list[str] = field(default_factory=list)
    non_numeric_lipids: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    n_samples: int = 0
    n_lipids: int = 0

    def __str__(self) -> str:
        if self.is_valid:
            return f"Valid: {self.filepath.name} ({self.n_samples} samples, {self.n_lipids} lipids)"
        issues = []
        if self.missing_required:
            issues.append(f"Missing columns: {self.missing_required}")
        if self.invalid_qc_types:
            issues.append(f"Unknown QC types: {self.invalid_qc_types}")
        if self.non_numeric_lipids:
            issues.append(f"Non-numeric lipid columns: {self.non_numeric_lipids}")
        issues.extend(self.warnings)
        return f"Invalid: {self.filepath.name} - {'; '.join(issues)}"


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename known alternative column names to the standard names."""
    rename_map = {
        orig: standard
        for orig, standard in COLUMN_ALIASES.items()
        if orig in df.columns and standard not in df.columns
    }
    return df.rename(columns=rename_map)


def _separator_for(filepath: Path) -> str:
    suffix = filepath.suffix.lower()
    return '\t' if suffix in ['.tsv', '.txt'] else ','


def read_table(filepath: Path) -> pd.DataFrame:
    """Read a CSV/TSV/TXT or parquet table with standardized column names."""
    filepath = Path(filepath)
    if not filepath.exists():
        raise DataImportError(f"Input file not found: {filepath}")

    if filepath.suffix.lower() == '.parquet' or filepath.is_dir():
        df = pd.read_parquet(filepath)
    else:
        df = pd.read_csv(filepath, sep=_separator_for(filepath))

    return _standardize_columns(df)


def require_columns(df: pd.DataFrame, required: list[str], table_name: str) -> None:
    """Raise DataImportError if any required column is missing."""
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise DataImportError(f"Missing required {table_name} columns: {missing}")


def require_unique_mapping(istd_map: pd.DataFrame) -> None:
    """Raise DataImportError if a lipid is mapped to more than one ISTD.

    Rows without an ISTD name are not counted.
    """
    mapped = istd_map.loc[istd_map['lipid_id'].notna() & istd_map['istd_id'].notna()]
    duplicated = mapped['lipid_id'].duplicated()
    if duplicated.any():
        duplicates = sorted(mapped.loc[duplicated, 'lipid_id'].astype(str).unique())
        raise DataImportError(f"Lipids mapped to more than one ISTD: {duplicates}")


def normalize_qc_types(qc_types: pd.Series) -> pd.Series:
    """Upper-case QC type labels and resolve aliases (SPL -> SAMPLE)."""
    normalized = qc_types.astype(str).str.strip().str.upper()
    return normalized.replace(QC_TYPE_ALIASES)


def validate_peak_area_table(
    filepath: Path,
    extra_metadata_columns: list[str] | None = None,
) -> ValidationResult:
    """Validate that a wide peak-area table can be assembled.

    Args:
        filepath: Path to the peak-area table (CSV, TSV or parquet)
        extra_metadata_columns: Non-lipid columns to ignore besides the required ones

    Returns:
        ValidationResult with validation details

    """
    filepath = Path(filepath)
    result = ValidationResult(is_valid=True, filepath=filepath)

    try:
        df = read_table(filepath)
    except (OSError, ValueError, pd.errors.ParserError) as e:
        result.is_valid = False
        result.warnings.append(f"Error reading file: {e}")
        return result

    result.missing_required = [col for col in METADATA_REQUIRED if col not in df.columns]
    if result.missing_required:
        result.is_valid = False
        return result

    qc_types = normalize_qc_types(df['qc_type'])
    result.invalid_qc_types = sorted(set(qc_types) - VALID_QC_TYPES)

    skip = set(METADATA_REQUIRED) | set(extra_metadata_columns or [])
    lipid_cols = [c for c in df.columns if c not in skip]
    for col in lipid_cols:
        coerced = pd.to_numeric(df[col], errors='coerce')
        if (coerced.isna() & df[col].notna()).any():
            result.non_numeric_lipids.append(col)

    if not lipid_cols:
        result.warnings.append("No lipid columns found")
    if 'BQC' not in set(qc_types):
        result.warnings.append("No BQC samples - drift correction will yield missing values")

    result.is_valid = not (
        result.invalid_qc_types or result.non_numeric_lipids or not lipid_cols
    )
    result.n_samples = len(df)
    result.n_lipids = len(lipid_cols)
    return result


def load_peak_areas(filepath: Path) -> pd.DataFrame:
    """Load a wide peak-area table (one row per sample, one column per lipid)."""
    df = read_table(filepath)
    require_columns(df, METADATA_REQUIRED, 'peak area')
    logger.info(f"Loaded {len(df)} samples from {Path(filepath).name}")
    return df


def load_istd_map(filepath: Path) -> pd.DataFrame:
    """Load the lipid -> internal standard mapping.

    Missing response factors default to 1.0.
    """
    df = read_table(filepath)
    require_columns(df, ISTD_MAP_REQUIRED, 'ISTD map')
    if 'response_factor' not in df.columns:
        df['response_factor'] = 1.0
    df['response_factor'] = pd.to_numeric(df['response_factor'], errors='coerce').fillna(1.0)

    require_unique_mapping(df)
    return df[['lipid_id', 'istd_id', 'response_factor']]


def load_istd_concentrations(filepath: Path) -> pd.DataFrame:
    """Load the spiked internal standard concentrations (nM)."""
    df = read_table(filepath)
    require_columns(df, ISTD_CONC_REQUIRED, 'ISTD concentration')
    df['concentration_nM'] = pd.to_numeric(df['concentration_nM'], errors='coerce')
    return df[ISTD_CONC_REQUIRED]


def load_lipid_metadata(filepath: Path) -> pd.DataFrame:
    """Load lipid annotations (class, quantifier flag)."""
    df = read_table(filepath)
    require_columns(df, LIPID_METADATA_REQUIRED, 'lipid metadata')
    return df


def load_curve_annotation(filepath: Path) -> pd.DataFrame:
    """Load response-curve annotations (sample -> curve, relative amount)."""
    df = read_table(filepath)
    require_columns(df, CURVE_ANNOTATION_REQUIRED, 'curve annotation')
    df['relative_amount'] = pd.to_numeric(df['relative_amount'], errors='coerce')
    return df[CURVE_ANNOTATION_REQUIRED]


def write_table(df: pd.DataFrame, path: Path, output_format: str = 'parquet', index: bool = False) -> Path:
    """Write a table as parquet, csv or tsv.

    Returns:
        The path written, with the suffix matching the format

    """
    path = Path(path).with_suffix(f'.{output_format}')
    if output_format == 'parquet':
        df.to_parquet(path, index=index)
    elif output_format == 'csv':
        df.to_csv(path, index=index)
    elif output_format == 'tsv':
        df.to_csv(path, sep='\t', index=index)
    else:
        raise ValueError(f"Unknown output format: {output_format}")
    logger.info(f"Saved {len(df)} rows to {path}")
    return path
