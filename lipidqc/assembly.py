"""Long-format assembly of wide peak-area tables.

Turns one-row-per-sample tables into one row per (sample, lipid) observation
tagged with run order, batch and QC sample type.
"""

from __future__ import annotations

import logging
import re

import pandas as pd

from .data_io import (
    METADATA_REQUIRED,
    VALID_QC_TYPES,
    DataImportError,
    normalize_qc_types,
    require_columns,
)

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION_PATTERN = r'\.(d|raw|mzml|mzxml|mzdata|wiff2?)$'


def strip_file_extension(sample_ids: pd.Series, pattern: str = DEFAULT_EXTENSION_PATTERN) -> pd.Series:
    """Remove acquisition-file suffixes such as '.d' or '.raw' from sample names."""
    regex = re.compile(pattern, re.IGNORECASE)
    return sample_ids.astype(str).str.strip().str.replace(regex, '', regex=True)


def assemble_long_format(
    wide: pd.DataFrame,
    excluded_samples: list[str] | None = None,
    extension_pattern: str = DEFAULT_EXTENSION_PATTERN,
    extra_metadata_columns: list[str] | None = None,
) -> pd.DataFrame:
    """Reshape a wide peak-area table to one row per (sample, lipid).

    Rows of ``wide`` are taken to be in acquisition order. Excluded samples
    are removed before ``run_index`` (1-based) is assigned, so run indices
    stay contiguous.

    Args:
        wide: Table with sample_id, qc_type, batch and one column per lipid
        excluded_samples: Sample names (extension stripped) to drop, e.g.
            known mis-injections
        extension_pattern: Regex matching file-extension suffixes to strip
        extra_metadata_columns: Additional non-lipid columns to carry through

    Returns:
        Long DataFrame with sample_id, lipid_id, run_index, batch, qc_type, area
        and any extra metadata columns

    Raises:
        DataImportError: If required columns are missing, QC types are
            unknown, batches are missing, sample names collide or a lipid
            column is not numeric

    """
    require_columns(wide, METADATA_REQUIRED, 'peak area')

    extra_cols = [c for c in (extra_metadata_columns or []) if c in wide.columns]
    missing_extra = set(extra_metadata_columns or []) - set(extra_cols)
    if missing_extra:
        logger.warning(f"Configured metadata columns not in data: {sorted(missing_extra)}")

    meta_cols = METADATA_REQUIRED + extra_cols
    lipid_cols = [c for c in wide.columns if c not in meta_cols]
    if not lipid_cols:
        raise DataImportError("Peak area table has no lipid columns")

    df = wide.copy()
    df['sample_id'] = strip_file_extension(df['sample_id'], extension_pattern)
    df['qc_type'] = normalize_qc_types(df['qc_type'])

    invalid_types = set(df['qc_type']) - VALID_QC_TYPES
    if invalid_types:
        raise DataImportError(
            f"Invalid qc_type values: {sorted(invalid_types)}. "
            f"Must be one of: {sorted(VALID_QC_TYPES)}"
        )

    if df['batch'].isna().any():
        missing = df.loc[df['batch'].isna(), 'sample_id'].tolist()
        raise DataImportError(f"Samples without batch: {missing}")

    if excluded_samples:
        excluded = set(excluded_samples)
        not_found = excluded - set(df['sample_id'])
        if not_found:
            logger.warning(f"Excluded samples not present in data: {sorted(not_found)}")
        n_before = len(df)
        df = df.loc[~df['sample_id'].isin(excluded)]
        logger.info(f"Excluded {n_before - len(df)} samples")

    duplicates = df.loc[df['sample_id'].duplicated(), 'sample_id'].tolist()
    if duplicates:
        raise DataImportError(f"Duplicate sample_id entries: {duplicates}")

    non_numeric = []
    for col in lipid_cols:
        coerced = pd.to_numeric(df[col], errors='coerce')
        if (coerced.isna() & df[col].notna()).any():
            non_numeric.append(col)
        df[col] = coerced
    if non_numeric:
        raise DataImportError(f"Non-numeric values in lipid columns: {non_numeric}")

    df = df.reset_index(drop=True)
    df['run_index'] = range(1, len(df) + 1)

    long = df.melt(
        id_vars=['sample_id', 'run_index'] + METADATA_REQUIRED[1:] + extra_cols,
        value_vars=lipid_cols,
        var_name='lipid_id',
        value_name='area',
    )
    long['area'] = long['area'].astype(float)

    ordered = ['sample_id', 'lipid_id', 'run_index', 'batch', 'qc_type', 'area'] + extra_cols
    long = long[ordered].sort_values(['run_index', 'lipid_id'], kind='stable').reset_index(drop=True)

    logger.info(
        f"Assembled {len(long)} observations: {df['sample_id'].nunique()} samples x "
        f"{len(lipid_cols)} lipids in {df['batch'].nunique()} batches"
    )
    return long
