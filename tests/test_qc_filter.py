"""Tests for the QC filter and final table export."""

import numpy as np
import pandas as pd
import pytest

from lipidqc.nomenclature import TableLipidResolver
from lipidqc.qc_filter import (
    QCThresholds,
    annotate_summary,
    apply_qc_filter,
    build_final_table,
    final_table_to_long,
    first_curve_r2_column,
)


def _summary(**overrides) -> pd.DataFrame:
    row = {
        'lipid_id': 'PC 34:1',
        'CV_BQC': 10.0,
        'D_ratio': 0.2,
        'SB_ratio': 6.0,
        'R2_RQC1': 0.9,
        'is_quantifier': True,
        'is_istd': False,
    }
    row.update(overrides)
    return pd.DataFrame([row])


class TestApplyQcFilter:
    """Tests for apply_qc_filter."""

    def test_pass(self):
        """Test that a lipid meeting every criterion passes."""
        result = apply_qc_filter(_summary())
        assert result.loc[0, 'QC_pass']

    def test_relaxed_cv_with_low_d_ratio(self):
        """Test the relaxed CV limit when the D-ratio is low."""
        result = apply_qc_filter(_summary(CV_BQC=40.0, D_ratio=0.3))
        assert result.loc[0, 'pass_CV']
        assert result.loc[0, 'QC_pass']

    def test_high_cv_and_d_ratio_fails(self):
        """Test that CV 60 with D-ratio 0.6 fails."""
        result = apply_qc_filter(_summary(CV_BQC=60.0, D_ratio=0.6))
        assert not result.loc[0, 'pass_CV']
        assert not result.loc[0, 'QC_pass']

    @pytest.mark.parametrize('column,value', [
        ('CV_BQC', 25.0),
        ('SB_ratio', 3.0),
        ('R2_RQC1', 0.8),
    ])
    def test_thresholds_are_strict(self, column, value):
        """Test that values exactly on a threshold fail."""
        overrides = {column: value}
        if column == 'CV_BQC':
            overrides['D_ratio'] = 0.5
        result = apply_qc_filter(_summary(**overrides))
        assert not result.loc[0, 'QC_pass']

    @pytest.mark.parametrize('column', ['CV_BQC', 'SB_ratio', 'R2_RQC1'])
    def test_missing_metric_fails(self, column):
        """Test that a missing metric fails its criterion."""
        result = apply_qc_filter(_summary(**{column: np.nan}))
        assert not result.loc[0, 'QC_pass']

    def test_istd_never_passes(self):
        """Test that internal standards are excluded regardless of metrics."""
        result = apply_qc_filter(_summary(is_istd=True))
        assert result.loc[0, 'pass_CV'] and result.loc[0, 'pass_SB'] and result.loc[0, 'pass_R2']
        assert not result.loc[0, 'QC_pass']

    def test_non_quantifier_never_passes(self):
        """Test that non-quantifier transitions are excluded."""
        result = apply_qc_filter(_summary(is_quantifier=False))
        assert not result.loc[0, 'QC_pass']

    def test_custom_thresholds(self):
        """Test that thresholds can be tightened."""
        result = apply_qc_filter(_summary(), QCThresholds(sb_ratio_min=10.0))
        assert not result.loc[0, 'QC_pass']

    def test_no_curve_column(self):
        """Test that without any R2 column every lipid fails linearity."""
        result = apply_qc_filter(_summary().drop(columns=['R2_RQC1']))
        assert not result.loc[0, 'pass_R2']
        assert not result.loc[0, 'QC_pass']

    def test_uses_lowest_numbered_curve(self):
        """Test that the first response curve decides linearity."""
        summary = _summary(R2_RQC1=0.5)
        summary['R2_RQC2'] = 0.99
        result = apply_qc_filter(summary)
        assert not result.loc[0, 'pass_R2']


class TestFirstCurveColumn:
    """Tests for first_curve_r2_column."""

    def test_numeric_order(self):
        """Test that curve numbers are compared numerically."""
        summary = pd.DataFrame(columns=['lipid_id', 'R2_RQC10', 'R2_RQC2', 'pval_RQC1'])
        assert first_curve_r2_column(summary) == 'R2_RQC2'

    def test_none(self):
        """Test that no R2 column returns None."""
        assert first_curve_r2_column(pd.DataFrame(columns=['lipid_id'])) is None


class TestAnnotateSummary:
    """Tests for annotate_summary."""

    def test_without_resolver(self):
        """Test that every lipid is a quantifier when no metadata is given."""
        summary = pd.DataFrame({'lipid_id': ['PC 34:1', 'ISTD']})
        annotated = annotate_summary(summary, {'ISTD'})

        assert annotated['is_quantifier'].all()
        assert annotated['is_istd'].tolist() == [False, True]

    def test_with_resolver(self):
        """Test that class and quantifier flags come from the resolver."""
        metadata = pd.DataFrame({
            'lipid_id': ['PC 34:1', 'CE 18:1'],
            'class': ['PC', 'CE'],
            'is_quantifier_transition': ['TRUE', 'FALSE'],
        })
        summary = pd.DataFrame({'lipid_id': ['PC 34:1', 'CE 18:1', 'Unknown']})
        annotated = annotate_summary(summary, set(), TableLipidResolver(metadata))

        by_lipid = annotated.set_index('lipid_id')
        assert by_lipid.loc['PC 34:1', 'lipid_class'] == 'PC'
        assert by_lipid['is_quantifier'].tolist() == [True, False, False]


class TestFinalTable:
    """Tests for build_final_table."""

    def _corrected(self) -> pd.DataFrame:
        rows = []
        for run, (sample, qc_type) in enumerate(
            [('BQC1', 'BQC'), ('S2', 'SAMPLE'), ('S1', 'SAMPLE'), ('BQC2', 'BQC')], start=1
        ):
            for lipid, base in (('PC 34:1', 10.0), ('PE 36:2', 5.0)):
                rows.append({
                    'sample_id': sample, 'lipid_id': lipid, 'run_index': run,
                    'qc_type': qc_type, 'concentration_corrected': base + run,
                })
        return pd.DataFrame(rows)

    def _qc_summary(self) -> pd.DataFrame:
        return pd.DataFrame({
            'lipid_id': ['PC 34:1', 'PE 36:2'],
            'QC_pass': [True, False],
        })

    def test_passing_samples_only(self):
        """Test that only SAMPLE rows of passing lipids are exported, in run order."""
        final = build_final_table(self._corrected(), self._qc_summary())

        assert final.index.tolist() == ['S2', 'S1']
        assert final.columns.tolist() == ['PC 34:1']
        assert final.loc['S2', 'PC 34:1'] == pytest.approx(12.0)

    def test_round_trip(self):
        """Test that melting the final table reproduces the source values."""
        corrected = self._corrected()
        final = build_final_table(corrected, self._qc_summary())
        long = final_table_to_long(final)

        expected = corrected.loc[
            (corrected['qc_type'] == 'SAMPLE') & (corrected['lipid_id'] == 'PC 34:1'),
            ['sample_id', 'lipid_id', 'concentration_corrected'],
        ]
        merged = long.merge(expected, on=['sample_id', 'lipid_id'], suffixes=('', '_src'))
        assert len(merged) == len(expected)
        np.testing.assert_allclose(
            merged['concentration_corrected'], merged['concentration_corrected_src']
        )


class TestThresholdsFromConfig:
    """Tests for QCThresholds.from_config."""

    def test_partial_config(self):
        """Test that omitted thresholds keep their defaults."""
        thresholds = QCThresholds.from_config({'r2_min': 0.9, 'cv_bqc_max': '20'})
        assert thresholds.r2_min == 0.9
        assert thresholds.cv_bqc_max == 20.0
        assert thresholds.sb_ratio_min == 3.0

    def test_empty_config(self):
        """Test that a missing section gives the defaults."""
        assert QCThresholds.from_config(None) == QCThresholds()

    def test_unknown_key(self):
        """Test that a misspelled setting is reported by name."""
        with pytest.raises(ValueError, match='r2_minimum'):
            QCThresholds.from_config({'r2_minimum': 0.9})

    def test_non_numeric_value(self):
        """Test that a non-numeric threshold is rejected."""
        with pytest.raises(ValueError, match='qc_filter'):
            QCThresholds.from_config({'sb_ratio_min': 'high'})
