"""Command-line interface for lipidqc.

QC post-processing of targeted lipidomics peak areas: ISTD normalization,
LOESS drift correction, batch alignment and per-lipid QC filtering.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from .assembly import DEFAULT_EXTENSION_PATTERN
from .data_io import (
    DataImportError,
    load_curve_annotation,
    load_istd_concentrations,
    load_istd_map,
    load_lipid_metadata,
    load_peak_areas,
    validate_peak_area_table,
    write_table,
)
from .nomenclature import TableLipidResolver
from .pipeline import run_pipeline
from .qc_filter import QCThresholds
from .qc_metrics import DEFAULT_CURVE_PATTERN

if TYPE_CHECKING:
    from .pipeline import PipelineResult

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'data': {
            'excluded_samples': [],
            'extension_pattern': DEFAULT_EXTENSION_PATTERN,
            'extra_metadata_columns': [],
        },
        'concentration': {
            'istd_volume': 100.0,
            'sample_volume': 10.0,
        },
        'drift_correction': {
            'qc_type': 'BQC',
            'span': 0.75,
            'iterations': 0,
            'min_qc_points': 4,
            'n_workers': 1,
        },
        'qc_metrics': {
            'curve_pattern': DEFAULT_CURVE_PATTERN,
        },
        'qc_filter': {
            'cv_bqc_max': 25.0,
            'cv_bqc_relaxed_max': 50.0,
            'd_ratio_max': 0.5,
            'sb_ratio_min': 3.0,
            'r2_min': 0.8,
        },
        'output': {
            'format': 'csv',
            'include_corrected_data': True,
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config_from_provenance(provenance_path: Path) -> tuple[dict, dict]:
    """Rebuild a configuration from a previous run's metadata.json.

    Returns:
        Tuple of (config merged over defaults, full provenance dict)

    Raises:
        ValueError: If the file has no processing_parameters section

    """
    with open(provenance_path) as f:
        provenance = json.load(f)

    if 'processing_parameters' not in provenance:
        raise ValueError(f"No processing_parameters in provenance file: {provenance_path}")

    config = _deep_merge(load_config(None), provenance['processing_parameters'])
    return config, provenance


def generate_pipeline_metadata(
    config: dict,
    result: PipelineResult,
    input_files: list[str],
) -> dict:
    """Generate pipeline metadata JSON for reproducibility and provenance."""
    try:
        from importlib.metadata import version
        pipeline_version = version('lipidqc')
    except Exception:
        pipeline_version = 'development'

    samples = result.long_data[['sample_id', 'qc_type', 'batch']].drop_duplicates('sample_id')
    sample_metadata = {
        'n_samples': len(samples),
        'qc_type_counts': samples['qc_type'].value_counts().to_dict(),
        'batches': samples['batch'].drop_duplicates().tolist(),
        'samples': samples['sample_id'].tolist(),
    }

    status_counts = (
        result.fit_status['status'].value_counts().to_dict()
        if not result.fit_status.empty else {}
    )

    return {
        'pipeline_version': pipeline_version,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'sample_metadata': sample_metadata,
        'lipids': {
            'n_lipids': int(result.qc_summary['lipid_id'].nunique()),
            'n_passed': int(result.qc_summary['QC_pass'].sum()),
            'dropped_without_istd': result.dropped_lipids,
        },
        'drift_fit_status': status_counts,
        'processing_parameters': config,
        'method_log': result.method_log,
        'warnings': result.warnings,
    }


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full QC pipeline.

    Pipeline stages:
    1. Assemble long format from the wide peak-area table
    2. ISTD normalization and concentration
    3. LOESS drift correction and batch alignment
    4. Per-lipid QC metrics
    5. QC filter and final table export
    """
    if args.provenance:
        config, _ = load_config_from_provenance(Path(args.provenance))
        logger.info(f"Loaded processing parameters from {args.provenance}")
    else:
        config = load_config(Path(args.config) if args.config else None)

    try:
        thresholds = QCThresholds.from_config(config.get('qc_filter'))
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        peak_areas = load_peak_areas(Path(args.input))
        istd_map = load_istd_map(Path(args.istd_map))
        istd_conc = load_istd_concentrations(Path(args.istd_conc))
        resolver = (
            TableLipidResolver(load_lipid_metadata(Path(args.lipid_metadata)))
            if args.lipid_metadata else None
        )
        curve_annotation = (
            load_curve_annotation(Path(args.curve_annotation))
            if args.curve_annotation else None
        )

        data_cfg = config['data']
        drift_cfg = config['drift_correction']
        result = run_pipeline(
            peak_areas,
            istd_map,
            istd_conc,
            resolver=resolver,
            curve_annotation=curve_annotation,
            excluded_samples=data_cfg.get('excluded_samples') or None,
            extension_pattern=data_cfg['extension_pattern'],
            extra_metadata_columns=data_cfg.get('extra_metadata_columns') or None,
            istd_volume=config['concentration']['istd_volume'],
            sample_volume=config['concentration']['sample_volume'],
            qc_type=drift_cfg['qc_type'],
            span=drift_cfg['span'],
            iterations=drift_cfg['iterations'],
            min_qc_points=drift_cfg['min_qc_points'],
            n_workers=drift_cfg['n_workers'],
            curve_pattern=config['qc_metrics']['curve_pattern'],
            thresholds=thresholds,
        )
    except DataImportError as e:
        logger.error(f"Input error: {e}")
        return 1

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_format = config['output'].get('format', 'csv')

    write_table(result.qc_summary, output_dir / 'qc_summary', output_format)
    write_table(result.final_table, output_dir / 'final_concentrations', output_format, index=True)
    write_table(result.fit_status, output_dir / 'drift_fit_status', output_format)
    if config['output'].get('include_corrected_data', True):
        write_table(result.corrected_data, output_dir / 'corrected_data', output_format)

    input_files = [str(args.input), str(args.istd_map), str(args.istd_conc)]
    for optional in (args.lipid_metadata, args.curve_annotation):
        if optional:
            input_files.append(str(optional))

    metadata = generate_pipeline_metadata(config, result, input_files)
    metadata_output = output_dir / 'metadata.json'
    with open(metadata_output, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {metadata_output}")

    logger.info("=" * 60)
    logger.info("lipidqc pipeline complete")
    logger.info("=" * 60)
    for step in result.method_log:
        logger.info(f"  {step}")
    logger.info(f"Output directory: {output_dir}")

    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check that a peak-area table has the expected structure."""
    result = validate_peak_area_table(
        Path(args.input),
        extra_metadata_columns=args.metadata_column,
    )
    if result.is_valid:
        logger.info(str(result))
        for w in result.warnings:
            logger.warning(w)
        return 0

    logger.error(str(result))
    return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='lipidqc',
        description='lipidqc: QC post-processing of targeted lipidomics data\n\n'
                    'ISTD normalization, LOESS drift correction on BQC samples,\n'
                    'batch alignment and per-lipid QC filtering.\n\n'
                    'Primary usage:\n'
                    '  lipidqc run -i areas.csv --istd-map istd_map.csv '
                    '--istd-conc istd_conc.csv -o output_dir/',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version='%(prog)s 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run the full QC pipeline',
        description='Normalize, drift-correct and QC-filter a lipidomics batch. '
                    'Writes the QC summary, final concentration table and provenance.'
    )
    run_parser.add_argument('-i', '--input', required=True,
                            help='Wide peak-area table (CSV/TSV/parquet)')
    run_parser.add_argument('--istd-map', required=True,
                            help='Lipid to ISTD mapping (lipid_id, istd_id, response_factor)')
    run_parser.add_argument('--istd-conc', required=True,
                            help='ISTD concentrations (istd_id, concentration_nM)')
    run_parser.add_argument('--lipid-metadata',
                            help='Lipid metadata (lipid_id, class, is_quantifier_transition)')
    run_parser.add_argument('--curve-annotation',
                            help='Response curve annotation (sample_id, curve, relative_amount)')
    run_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    config_group = run_parser.add_mutually_exclusive_group()
    config_group.add_argument('-c', '--config', help='Configuration YAML file')
    config_group.add_argument('--provenance',
                              help='metadata.json of a previous run to reuse its parameters')

    val_parser = subparsers.add_parser('validate', help='Validate a peak-area table')
    val_parser.add_argument('-i', '--input', required=True, help='Wide peak-area table')
    val_parser.add_argument('--metadata-column', action='append', default=[],
                            help='Additional non-lipid column (repeatable)')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'run':
        return cmd_run(args)
    elif args.command == 'validate':
        return cmd_validate(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
