"""ISTD normalization and concentration calculation.

Each lipid is normalized to the peak area of its designated internal standard
(ISTD) measured in the same sample, then converted to a concentration:

    conc = normalized_area * response_factor * istd_conc_nM / 1000
           * (istd_volume / sample_volume)

An ISTD whose own area is zero or missing makes every lipid in its group
missing for that sample rather than raising.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .data_io import (
    ISTD_CONC_REQUIRED,
    ISTD_MAP_REQUIRED,
    ConfigurationWarning,
    require_columns,
    require_unique_mapping,
)

logger = logging.getLogger(__name__)


@dataclass
class ConcentrationResult:
    """Result of ISTD normalization.

    Attributes:
        data: Long table with istd_id, response_factor, istd_area,
            normalized_area and concentration columns added
        dropped_lipids: Lipids removed because they have no ISTD mapping
        warnings: Configuration problems found in the reference tables
    """
    data: pd.DataFrame
    dropped_lipids: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _warn(message: str, collected: list[str]) -> None:
    logger.warning(message)
    warnings.warn(message, ConfigurationWarning, stacklevel=3)
    collected.append(message)


def _drop_blank_mappings(istd_map: pd.DataFrame) -> pd.DataFrame:
    """Remove map rows with an empty lipid_id or istd_id."""
    ids = istd_map[ISTD_MAP_REQUIRED].apply(lambda col: col.astype('string').str.strip()).fillna('')
    usable = (ids != '').all(axis=1)
    n_blank = int((~usable).sum())
    if n_blank:
        logger.info(f"Ignoring {n_blank} ISTD map rows without lipid or ISTD name")
    return istd_map.loc[usable].copy()


def complete_istd_map(istd_map: pd.DataFrame) -> pd.DataFrame:
    """Ensure every referenced ISTD maps to itself with response factor 1.

    Rows with an empty lipid or ISTD name are ignored, so the lipid counts as
    unmapped.
    """
    istd_map = _drop_blank_mappings(istd_map)
    if 'response_factor' not in istd_map.columns:
        istd_map['response_factor'] = 1.0
    istd_map['response_factor'] = istd_map['response_factor'].fillna(1.0)

    missing_self = sorted(set(istd_map['istd_id']) - set(istd_map['lipid_id']))
    if missing_self:
        self_rows = pd.DataFrame({
            'lipid_id': missing_self,
            'istd_id': missing_self,
            'response_factor': 1.0,
        })
        istd_map = pd.concat([istd_map, self_rows], ignore_index=True)
    return istd_map[['lipid_id', 'istd_id', 'response_factor']]


def calculate_concentrations(
    long_data: pd.DataFrame,
    istd_map: pd.DataFrame,
    istd_concentrations: pd.DataFrame,
    istd_volume: float = 100.0,
    sample_volume: float = 10.0,
) -> ConcentrationResult:
    """Normalize lipid areas to their ISTD and compute concentrations.

    Args:
        long_data: Output of assemble_long_format
        istd_map: lipid_id -> istd_id, response_factor
        istd_concentrations: istd_id -> concentration_nM
        istd_volume: Volume of ISTD solution spiked into each sample
        sample_volume: Sample volume (same unit as istd_volume)

    Returns:
        ConcentrationResult with the enriched long table

    """
    require_columns(istd_map, ISTD_MAP_REQUIRED, 'ISTD map')
    require_columns(istd_concentrations, ISTD_CONC_REQUIRED, 'ISTD concentration')
    if sample_volume <= 0:
        raise ValueError(f"sample_volume must be positive, got {sample_volume}")

    result = ConcentrationResult(data=pd.DataFrame())
    istd_map = complete_istd_map(istd_map)
    require_unique_mapping(istd_map)

    lipids_in_data = set(long_data['lipid_id'].unique())
    unmapped = sorted(lipids_in_data - set(istd_map['lipid_id']))
    if unmapped:
        _warn(
            f"{len(unmapped)} lipids have no ISTD mapping and were dropped: {unmapped}",
            result.warnings,
        )
        result.dropped_lipids = unmapped

    referenced_istds = set(istd_map.loc[istd_map['lipid_id'].isin(lipids_in_data), 'istd_id'])
    absent_istds = sorted(referenced_istds - lipids_in_data)
    if absent_istds:
        _warn(
            f"ISTDs referenced in the map but not measured: {absent_istds}",
            result.warnings,
        )

    conc_lookup = istd_concentrations.drop_duplicates('istd_id').set_index('istd_id')['concentration_nM']
    no_conc = sorted(referenced_istds - set(conc_lookup.dropna().index))
    if no_conc:
        _warn(
            f"ISTDs without a known concentration: {no_conc}",
            result.warnings,
        )

    data = long_data.loc[~long_data['lipid_id'].isin(unmapped)].merge(
        istd_map, on='lipid_id', how='left'
    )

    # The ISTD's own area in each sample
    istd_areas = (
        long_data[['sample_id', 'lipid_id', 'area']]
        .rename(columns={'lipid_id': 'istd_id', 'area': 'istd_area'})
    )
    data = data.merge(istd_areas, on=['sample_id', 'istd_id'], how='left')

    denominator = data['istd_area'].where(data['istd_area'] != 0)
    data['normalized_area'] = data['area'] / denominator

    istd_conc = data['istd_id'].map(conc_lookup).astype(float)
    data['concentration'] = (
        data['normalized_area']
        * data['response_factor']
        * istd_conc / 1000.0
        * (istd_volume / sample_volume)
    )
    data['concentration'] = data['concentration'].replace([np.inf, -np.inf], np.nan)

    n_missing_istd = int(data['normalized_area'].isna().sum() - data['area'].isna().sum())
    if n_missing_istd > 0:
        logger.info(f"{n_missing_istd} observations without usable ISTD area set to missing")

    result.data = data.sort_values(['run_index', 'lipid_id'], kind='stable').reset_index(drop=True)
    logger.info(
        f"Calculated concentrations for {result.data['lipid_id'].nunique()} lipids "
        f"using {result.data['istd_id'].nunique()} ISTDs"
    )
    return result
