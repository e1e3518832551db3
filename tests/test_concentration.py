"""Tests for ISTD normalization and concentration calculation."""

import numpy as np
import pandas as pd
import pytest

from lipidqc.assembly import assemble_long_format
from lipidqc.concentration import calculate_concentrations, complete_istd_map
from lipidqc.data_io import ConfigurationWarning, DataImportError

from conftest import PC_ISTD, PE_ISTD


def _long(wide: pd.DataFrame) -> pd.DataFrame:
    return assemble_long_format(wide)


def _simple_long() -> pd.DataFrame:
    wide = pd.DataFrame({
        'sample_id': ['S1', 'S2', 'S3'],
        'qc_type': ['SAMPLE', 'SAMPLE', 'SAMPLE'],
        'batch': ['B1', 'B1', 'B1'],
        'ISTD': [1000.0, 0.0, np.nan],
        'LipidA': [500.0, 500.0, 500.0],
    })
    return _long(wide)


class TestCompleteIstdMap:
    """Tests for ISTD self-mapping."""

    def test_adds_self_mapping(self):
        """Test that ISTDs missing from the map are mapped to themselves."""
        istd_map = pd.DataFrame({'lipid_id': ['LipidA'], 'istd_id': ['ISTD']})
        completed = complete_istd_map(istd_map)

        row = completed.set_index('lipid_id').loc['ISTD']
        assert row['istd_id'] == 'ISTD'
        assert row['response_factor'] == 1.0


class TestCalculateConcentrations:
    """Tests for calculate_concentrations."""

    def test_formula(self):
        """Test normalized area, response factor and volume scaling."""
        istd_map = pd.DataFrame({
            'lipid_id': ['LipidA'], 'istd_id': ['ISTD'], 'response_factor': [2.0],
        })
        istd_conc = pd.DataFrame({'istd_id': ['ISTD'], 'concentration_nM': [400.0]})

        result = calculate_concentrations(
            _simple_long(), istd_map, istd_conc, istd_volume=50.0, sample_volume=10.0
        )
        row = result.data.set_index(['sample_id', 'lipid_id']).loc[('S1', 'LipidA')]

        assert row['normalized_area'] == pytest.approx(0.5)
        # 0.5 * 2.0 * 400 / 1000 * (50 / 10)
        assert row['concentration'] == pytest.approx(2.0)

    def test_zero_or_missing_istd_area_is_missing(self):
        """Test that a zero or missing ISTD area yields missing values, not errors."""
        istd_map = pd.DataFrame({'lipid_id': ['LipidA'], 'istd_id': ['ISTD']})
        istd_conc = pd.DataFrame({'istd_id': ['ISTD'], 'concentration_nM': [400.0]})

        result = calculate_concentrations(_simple_long(), istd_map, istd_conc)
        data = result.data.set_index(['sample_id', 'lipid_id'])

        for sample in ('S2', 'S3'):
            assert np.isnan(data.loc[(sample, 'LipidA'), 'normalized_area'])
            assert np.isnan(data.loc[(sample, 'LipidA'), 'concentration'])

    def test_self_normalization_is_identity(self, peak_areas, istd_map, istd_concentrations):
        """Test that every ISTD normalized to itself equals 1."""
        result = calculate_concentrations(_long(peak_areas), istd_map, istd_concentrations)
        data = result.data

        own = data.loc[data['lipid_id'] == data['istd_id']]
        usable = own['istd_area'].notna() & (own['istd_area'] != 0)
        assert set(own['lipid_id']) == {PC_ISTD, PE_ISTD}
        np.testing.assert_allclose(own.loc[usable, 'normalized_area'], 1.0)

    def test_unmapped_lipid_dropped_with_warning(self, peak_areas, istd_map, istd_concentrations):
        """Test that lipids without ISTD mapping are dropped and reported."""
        with pytest.warns(ConfigurationWarning, match='LPC 18:0'):
            result = calculate_concentrations(_long(peak_areas), istd_map, istd_concentrations)

        assert result.dropped_lipids == ['LPC 18:0']
        assert 'LPC 18:0' not in set(result.data['lipid_id'])
        assert any('LPC 18:0' in w for w in result.warnings)

    def test_unique_per_sample_lipid(self, peak_areas, istd_map, istd_concentrations):
        """Test that the join does not duplicate observations."""
        result = calculate_concentrations(_long(peak_areas), istd_map, istd_concentrations)
        assert not result.data.duplicated(['sample_id', 'lipid_id']).any()

    def test_istd_without_concentration(self):
        """Test that an ISTD missing from the concentration table gives missing values."""
        istd_map = pd.DataFrame({'lipid_id': ['LipidA'], 'istd_id': ['ISTD']})
        istd_conc = pd.DataFrame({'istd_id': ['OTHER'], 'concentration_nM': [1.0]})

        with pytest.warns(ConfigurationWarning, match='concentration'):
            result = calculate_concentrations(_simple_long(), istd_map, istd_conc)

        data = result.data.set_index(['sample_id', 'lipid_id'])
        assert data.loc[('S1', 'LipidA'), 'normalized_area'] == pytest.approx(0.5)
        assert np.isnan(data.loc[('S1', 'LipidA'), 'concentration'])

    def test_missing_map_columns_raise(self):
        """Test that a malformed ISTD map is a structural error."""
        bad_map = pd.DataFrame({'lipid_id': ['LipidA']})
        istd_conc = pd.DataFrame({'istd_id': ['ISTD'], 'concentration_nM': [1.0]})
        with pytest.raises(DataImportError, match='istd_id'):
            calculate_concentrations(_simple_long(), bad_map, istd_conc)

    def test_blank_istd_treated_as_unmapped(self):
        """Test that a map row without an ISTD name drops the lipid with a warning."""
        wide = pd.DataFrame({
            'sample_id': ['S1', 'S2'],
            'qc_type': ['SAMPLE', 'SAMPLE'],
            'batch': ['B1', 'B1'],
            'ISTD': [1000.0, 1000.0],
            'LipidA': [500.0, 600.0],
            'LipidB': [200.0, 300.0],
        })
        istd_map = pd.DataFrame({'lipid_id': ['LipidA', 'LipidB'], 'istd_id': ['ISTD', np.nan]})
        istd_conc = pd.DataFrame({'istd_id': ['ISTD'], 'concentration_nM': [400.0]})

        with pytest.warns(ConfigurationWarning, match='LipidB'):
            result = calculate_concentrations(_long(wide), istd_map, istd_conc)

        assert result.dropped_lipids == ['LipidB']
        assert set(result.data['lipid_id']) == {'ISTD', 'LipidA'}

    def test_lipid_mapped_twice_raises(self, peak_areas, istd_map, istd_concentrations):
        """Test that a lipid mapped to two ISTDs is a structural error."""
        extra = pd.DataFrame({'lipid_id': ['PC 34:1'], 'istd_id': [PE_ISTD], 'response_factor': [1.0]})
        ambiguous = pd.concat([istd_map, extra], ignore_index=True)

        with pytest.raises(DataImportError, match='PC 34:1'):
            calculate_concentrations(_long(peak_areas), ambiguous, istd_concentrations)


class TestCompleteIstdMapBlanks:
    """Tests for map rows with empty names."""

    @pytest.mark.parametrize('blank', [np.nan, None, '', '  '])
    def test_blank_rows_ignored(self, blank):
        """Test that rows with an empty ISTD name are removed."""
        istd_map = pd.DataFrame({'lipid_id': ['LipidA', 'LipidB'], 'istd_id': ['ISTD', blank]})
        completed = complete_istd_map(istd_map)

        assert sorted(completed['lipid_id']) == ['ISTD', 'LipidA']
