"""Shared fixtures: a small two-batch lipidomics run with known drift."""

import numpy as np
import pandas as pd
import pytest

PC_ISTD = 'PC 33:1 (d7)'
PE_ISTD = 'PE 33:1 (d7)'

# Biological variation cycled over study samples
BIO_FACTORS = [0.8, 1.0, 1.2, 0.9, 1.1, 1.05]


def _batch_sequence(batch: int, first_sample: int, curve: int) -> list[tuple[str, str]]:
    """Injection sequence of one batch as (sample_id, qc_type)."""
    rows = [(f'B{batch}_PBLK1.d', 'PBLK')]
    rows += [(f'B{batch}_RQC-{curve}-{amount}.d', 'RQC') for amount in (25, 50, 75, 100)]
    sample = first_sample
    for block in range(4):
        rows.append((f'B{batch}_BQC{block + 1}.d', 'BQC'))
        if block in (2, 3):
            rows.append((f'B{batch}_TQC{block - 1}.d', 'TQC'))
        for _ in range(3):
            rows.append((f'S{sample:02d}.d', 'SPL'))
            sample += 1
    rows.append((f'B{batch}_BQC5.d', 'BQC'))
    rows.append((f'B{batch}_SBLK1.d', 'SBLK'))
    return rows


def make_peak_area_table() -> pd.DataFrame:
    """Wide peak-area table with linear drift and a batch offset."""
    sequence = [(sid, qct, 'B1') for sid, qct in _batch_sequence(1, 1, curve=1)]
    sequence += [(sid, qct, 'B2') for sid, qct in _batch_sequence(2, 13, curve=2)]

    records = []
    sample_counter = 0
    for run, (sample_id, qc_type, batch) in enumerate(sequence, start=1):
        drift = (1.0 + 0.02 * run) * (0.7 if batch == 'B2' else 1.0)

        if qc_type == 'SPL':
            level = BIO_FACTORS[sample_counter % len(BIO_FACTORS)]
            sample_counter += 1
        elif qc_type == 'RQC':
            level = int(sample_id.split('-')[-1].split('.')[0]) / 100.0
        elif qc_type in ('PBLK', 'SBLK'):
            level = 0.01
        else:
            level = 1.0

        istd_area = 0.0 if qc_type == 'SBLK' else 1000.0
        records.append({
            'sample_id': sample_id,
            'qc_type': qc_type,
            'batch': batch,
            PC_ISTD: istd_area,
            PE_ISTD: 800.0 if qc_type != 'SBLK' else 0.0,
            'PC 34:1': 2000.0 * level * drift,
            'PE 36:2': 500.0 * level * drift,
            # Blank carries the same signal as the samples
            'TG 52:2': 3000.0 * drift * (level if qc_type != 'PBLK' else 1.0),
            'CE 18:1': 1500.0 * level * drift,
            'LPC 18:0': 100.0 * level * drift,
        })
    return pd.DataFrame(records)


@pytest.fixture
def peak_areas() -> pd.DataFrame:
    return make_peak_area_table()


@pytest.fixture
def istd_map() -> pd.DataFrame:
    return pd.DataFrame({
        'lipid_id': ['PC 34:1', 'PE 36:2', 'TG 52:2', 'CE 18:1', PC_ISTD, PE_ISTD],
        'istd_id': [PC_ISTD, PE_ISTD, PC_ISTD, PC_ISTD, PC_ISTD, PE_ISTD],
        'response_factor': [1.0, 1.2, 0.8, 1.0, 1.0, 1.0],
    })


@pytest.fixture
def istd_concentrations() -> pd.DataFrame:
    return pd.DataFrame({
        'istd_id': [PC_ISTD, PE_ISTD],
        'concentration_nM': [500.0, 250.0],
    })


@pytest.fixture
def lipid_metadata() -> pd.DataFrame:
    return pd.DataFrame({
        'lipid_id': ['PC 34:1', 'PE 36:2', 'TG 52:2', 'CE 18:1', PC_ISTD, PE_ISTD],
        'class': ['PC', 'PE', 'TG', 'CE', 'PC', 'PE'],
        'is_quantifier_transition': [True, True, True, False, True, True],
    })


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)
