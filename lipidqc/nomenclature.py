"""Lipid name resolution.

Lipid class, standardized name and the quantifier flag come from an external
nomenclature source. The pipeline only depends on the narrow
``LipidNameResolver`` contract: given raw names, return their attributes,
with unresolved names present but carrying missing values.
"""

from __future__ import annotations

import logging
from typing import Protocol

import numpy as np
import pandas as pd

from .data_io import LIPID_METADATA_REQUIRED, require_columns

logger = logging.getLogger(__name__)

RESOLVED_COLUMNS = ['lipid_class', 'standardized_name', 'is_quantifier']

_TRUE_STRINGS = {'true', 't', 'yes', 'y', '1', 'x'}
_FALSE_STRINGS = {'false', 'f', 'no', 'n', '0', ''}


class LipidNameResolver(Protocol):
    """Resolve raw lipid names to normalized attributes."""

    def resolve(self, names: list[str]) -> pd.DataFrame:
        """Return a DataFrame indexed by lipid_id with RESOLVED_COLUMNS."""
        ...


def _parse_flag(value) -> object:
    if pd.isna(value):
        return pd.NA
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, (int, float, np.integer, np.floating)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return pd.NA


class TableLipidResolver:
    """Resolver backed by a static lipid metadata table.

    Expected columns: lipid_id and optionally class (or lipid_class),
    standardized_name and is_quantifier_transition (or is_quantifier).
    """

    def __init__(self, metadata: pd.DataFrame):
        require_columns(metadata, LIPID_METADATA_REQUIRED, 'lipid metadata')
        table = metadata.rename(columns={
            'class': 'lipid_class',
            'is_quantifier_transition': 'is_quantifier',
        }).drop_duplicates('lipid_id').set_index('lipid_id')

        for col in RESOLVED_COLUMNS:
            if col not in table.columns:
                table[col] = pd.NA
        table['is_quantifier'] = table['is_quantifier'].map(_parse_flag).astype('boolean')
        self._table = table[RESOLVED_COLUMNS]

    def resolve(self, names: list[str]) -> pd.DataFrame:
        resolved = self._table.reindex(pd.Index(names, name='lipid_id'))
        n_unresolved = int(resolved['lipid_class'].isna().sum())
        if n_unresolved:
            logger.info(f"{n_unresolved} of {len(names)} lipid names not found in metadata")
        return resolved
