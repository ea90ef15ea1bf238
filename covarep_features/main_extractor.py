"""
Main Glottal Feature Extraction Driver.

Runs the per-file analysis pipeline over every WAV file of a directory and
writes one feature matrix per file, named after the source file.

Features extracted (36 columns, sampled every ``sample_interval`` seconds):
1. Pitch and voicing (F0, VUV)
2. Glottal source parameters (NAQ, QOQ, H1H2, PSP)
3. Wavelet measures (MDQ, peakSlope)
4. LF-model shape (Rd, Rd_conf)
5. Creaky voice probability (creak_prob)
6. Spectral envelope cepstra (MFCC_0 .. MFCC_24)
"""

import os
import sys
import argparse
import logging
import multiprocessing as mp
import time
from multiprocessing.connection import wait
from dataclasses import replace
from typing import Dict, List, Optional, Any
from pathlib import Path
import warnings

import pandas as pd
import yaml
from tqdm import tqdm

from .alignment import FEATURE_NAMES
from .config import ExtractionConfig, OUTPUT_FORMATS
from .pipeline import extract_file_features
from .toolkit import AnalysisToolkit
from .utils.audio_loader import get_audio_info, list_wav_files
from .utils.feature_io import output_path_for, save_feature_matrix
from .utils.validation import validate_feature_matrix, generate_qc_report

# Suppress warnings for cleaner output
warnings.filterwarnings('ignore', category=UserWarning)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = [
    'file', 'status', 'duration_seconds', 'n_frames', 'voiced', 'creak_fallback',
    'n_issues', 'output_path', 'error'
]


def analyse_file(
    audio_path: str,
    config: ExtractionConfig,
    toolkit: Optional[AnalysisToolkit] = None
) -> Dict[str, Any]:
    """
    Extract, validate and save the feature matrix of one file.

    Parameters
    ----------
    audio_path : str
        Path to a WAV file
    config : ExtractionConfig
        Extraction configuration
    toolkit : AnalysisToolkit, optional
        Sub-analysis implementations

    Returns
    -------
    Dict[str, Any]
        Summary row for the file

    Raises
    ------
    Exception
        Whatever loading or a fatal stage raised; the caller decides
        whether the run continues.
    """
    audio_path = Path(audio_path)
    matrix = extract_file_features(str(audio_path), config=config, toolkit=toolkit)

    _, issues = validate_feature_matrix(matrix)
    out_path = output_path_for(audio_path, config.output_dir, config.output_format)
    save_feature_matrix(matrix, out_path, config.output_format)

    stage_status = matrix.metadata.get('stage_status', {})
    return {
        'file': audio_path.name,
        'status': 'done',
        'duration_seconds': get_audio_info(audio_path).get('duration_seconds'),
        'n_frames': matrix.n_frames,
        'voiced': stage_status.get('gci') != 'skipped',
        'creak_fallback': stage_status.get('creak') == 'fallback',
        'n_issues': len(issues),
        'output_path': str(out_path),
        'error': None,
    }


def _error_text(error: Exception) -> str:
    """Failure text for the summary; some decoder errors carry no message."""
    return f"{type(error).__name__}: {error}"


def _failed_row(audio_path: Path, error: str) -> Dict[str, Any]:
    return {
        'file': audio_path.name,
        'status': 'failed',
        'duration_seconds': None,
        'n_frames': 0,
        'voiced': None,
        'creak_fallback': False,
        'n_issues': 0,
        'output_path': None,
        'error': error,
    }


def process_directory(
    in_dir: str,
    sample_interval: Optional[float] = None,
    config: Optional[ExtractionConfig] = None,
    toolkit: Optional[AnalysisToolkit] = None
) -> pd.DataFrame:
    """
    Extract features from every WAV file of a directory.

    Parameters
    ----------
    in_dir : str
        Directory holding ``*.wav`` files
    sample_interval : float, optional
        Feature sampling interval in seconds; overrides the config value
        (0.01 by default)
    config : ExtractionConfig, optional
        Extraction configuration
    toolkit : AnalysisToolkit, optional
        Sub-analysis implementations (defaults from the config)

    Returns
    -------
    pd.DataFrame
        One summary row per file, in listing order

    Raises
    ------
    NotADirectoryError
        If ``in_dir`` does not exist
    """
    if config is None:
        config = ExtractionConfig()
    if sample_interval is not None and sample_interval != config.sample_interval:
        config = replace(config, sample_interval=sample_interval)
    if toolkit is None:
        toolkit = AnalysisToolkit.from_config(config)

    wav_files = list_wav_files(in_dir)
    logger.info(f"Processing directory: {in_dir}")

    if not wav_files:
        logger.warning("No wav files in input directory")
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    logger.info(f"Found {len(wav_files)} wav files")

    if config.n_jobs > 1:
        rows = _process_parallel(wav_files, config, toolkit)
    else:
        rows = []
        for audio_path in tqdm(wav_files, desc="Extracting features", disable=not config.verbose):
            logger.info(f"Analysing file: {audio_path.stem}")
            try:
                row = analyse_file(audio_path, config, toolkit)
            except Exception as e:
                if not config.skip_on_error:
                    raise
                error = _error_text(e)
                logger.error(f"Feature extraction failed for {audio_path}: {error}")
                row = _failed_row(audio_path, error)
            else:
                logger.info(f"{audio_path.stem} DONE")
            rows.append(row)

    df = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
    _log_summary(df, config.verbose)
    return df


def _analyse_file_or_report(
    audio_path: Path,
    config: ExtractionConfig,
    toolkit: AnalysisToolkit
) -> Dict[str, Any]:
    """Run one file; failures come back as summary rows, not exceptions."""
    try:
        return analyse_file(audio_path, config, toolkit)
    except Exception as e:
        return _failed_row(audio_path, _error_text(e))


def _file_worker(conn, audio_path: Path, config: ExtractionConfig, toolkit: AnalysisToolkit):
    """Worker process entry point: send the summary row back through ``conn``."""
    try:
        conn.send(_analyse_file_or_report(audio_path, config, toolkit))
    finally:
        conn.close()


def _process_parallel(
    wav_files: List[Path],
    config: ExtractionConfig,
    toolkit: AnalysisToolkit
) -> List[Dict[str, Any]]:
    """
    Process files in up to ``n_jobs`` worker processes, one process per file.

    ``file_timeout`` is counted from the moment a file's worker starts. A
    worker past its deadline is terminated and the file is reported as
    failed, so a hung analysis never outlives the run.

    Returns
    -------
    List[Dict[str, Any]]
        Summary rows in listing order
    """
    rows: List[Optional[Dict[str, Any]]] = [None] * len(wav_files)
    pending = list(enumerate(wav_files))
    active: Dict[int, tuple] = {}
    progress = tqdm(total=len(wav_files), desc="Extracting features", disable=not config.verbose)

    def finish(index: int, row: Dict[str, Any]):
        process, conn, _ = active.pop(index)
        conn.close()
        process.join(timeout=1)
        if process.is_alive():
            process.kill()
            process.join()
        rows[index] = row
        progress.update(1)

        audio_path = wav_files[index]
        if row['status'] == 'failed':
            if not config.skip_on_error:
                raise RuntimeError(f"Feature extraction failed for {audio_path}: {row['error']}")
            logger.error(f"Feature extraction failed for {audio_path}: {row['error']}")
        else:
            logger.info(f"{audio_path.stem} DONE")

    try:
        while pending or active:
            while pending and len(active) < config.n_jobs:
                index, audio_path = pending.pop(0)
                logger.info(f"Analysing file: {audio_path.stem}")
                parent_conn, child_conn = mp.Pipe(duplex=False)
                process = mp.Process(
                    target=_file_worker,
                    args=(child_conn, audio_path, config, toolkit),
                    daemon=True
                )
                process.start()
                child_conn.close()
                active[index] = (process, parent_conn, time.monotonic())

            wait_for = None
            if config.file_timeout is not None:
                now = time.monotonic()
                wait_for = max(0.0, min(
                    started + config.file_timeout - now for _, _, started in active.values()
                ))
            ready = wait([conn for _, conn, _ in active.values()], timeout=wait_for)

            for index in list(active):
                process, conn, started = active[index]
                if conn in ready:
                    try:
                        row = conn.recv()
                    except EOFError:
                        process.join()
                        row = _failed_row(
                            wav_files[index], f"worker exited with code {process.exitcode}"
                        )
                    finish(index, row)
                elif (config.file_timeout is not None
                      and time.monotonic() - started >= config.file_timeout):
                    process.terminate()
                    finish(index, _failed_row(
                        wav_files[index], f"timed out after {config.file_timeout}s"
                    ))
    finally:
        for process, conn, _ in active.values():
            process.terminate()
            process.join()
            conn.close()
        progress.close()
    return rows


def _log_summary(df: pd.DataFrame, verbose: bool = True):
    failed = df[df['status'] == 'failed']

    logger.info(f"\nExtraction Summary:")
    logger.info(f"  - Successfully processed: {len(df) - len(failed)} files")
    logger.info(f"  - Errors: {len(failed)} files")
    logger.info(f"  - Creak fallbacks: {int(df['creak_fallback'].sum())} files")
    logger.info(f"  - Features per frame: {len(FEATURE_NAMES)}")

    if len(failed) and verbose:
        logger.info(f"\nFirst 5 errors:")
        for _, row in failed.head(5).iterrows():
            logger.info(f"  - {row['file']}: {row['error']}")


def get_all_feature_names() -> List[str]:
    """Return list of all feature names in order."""
    return list(FEATURE_NAMES)


def print_feature_descriptions():
    """Print descriptions of all extracted features."""
    descriptions = {
        # Pitch
        'F0': 'Fundamental frequency (Hz), 0 where undefined',
        'VUV': 'Voicing decision, 1 voiced / 0 unvoiced',

        # Glottal source
        'NAQ': 'Normalised amplitude quotient of the glottal flow',
        'QOQ': 'Quasi-open quotient of the glottal flow',
        'H1H2': 'Difference of the first two glottal harmonics (dB)',
        'PSP': 'Parabolic spectral parameter of the glottal flow',

        # Wavelet measures
        'MDQ': 'Maxima dispersion quotient around each glottal closure',
        'peakSlope': 'Slope of wavelet peak amplitudes across octave scales',

        # LF model
        'Rd': 'LF-model shape parameter estimated from harmonic phases',
        'Rd_conf': 'Confidence of the Rd estimate (0-1)',

        # Creak
        'creak_prob': 'Probability of creaky voice (0 when detection failed)',
    }

    print("\n" + "=" * 70)
    print("GLOTTAL AND SPECTRAL FEATURES PER FRAME")
    print("=" * 70)

    print("\n--- PITCH, SOURCE AND VOICE QUALITY ---\n")
    for name in FEATURE_NAMES:
        if name in descriptions:
            print(f"  {name}: {descriptions[name]}")

    print("\n--- SPECTRAL ENVELOPE ---\n")
    print("  MFCC_0 .. MFCC_24: Mel cepstra of the true spectral envelope")
    print("  (one envelope per glottal cycle, cepstral order adapted to F0)")

    print("\n" + "=" * 70)
    print(f"Total features: {len(get_all_feature_names())}")
    print("=" * 70 + "\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='covarep-features',
        description="Extract glottal and spectral feature matrices from a directory of WAV files"
    )
    parser.add_argument(
        'in_dir',
        nargs='?',
        help='Directory containing .wav files'
    )
    parser.add_argument(
        '--sample-rate',
        type=float,
        default=None,
        help='Feature sampling interval in seconds (default: 0.01)'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration YAML file'
    )
    parser.add_argument(
        '--output-dir',
        type=str,
        default=None,
        help='Directory for feature files (default: next to each wav file)'
    )
    parser.add_argument(
        '--format',
        choices=OUTPUT_FORMATS,
        default=None,
        help='Output format (default: mat)'
    )
    parser.add_argument(
        '--jobs',
        type=int,
        default=None,
        help='Number of worker processes'
    )
    parser.add_argument(
        '--qc-report',
        type=str,
        default=None,
        help='Write a QC report to this path'
    )
    parser.add_argument(
        '--list-features',
        action='store_true',
        help='Print feature descriptions and exit'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Command-line entry point.

    Returns
    -------
    int
        0 on success (including an empty directory), 1 if any file failed,
        2 for invalid arguments or a missing input directory
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_features:
        print_feature_descriptions()
        return 0

    if args.in_dir is None:
        parser.error("the following arguments are required: in_dir")

    if not os.path.isdir(args.in_dir):
        logger.error(f"Input directory not found: {args.in_dir}")
        return 2

    try:
        config = ExtractionConfig.from_yaml(args.config) if args.config else ExtractionConfig()
        overrides = {
            'output_dir': args.output_dir,
            'output_format': args.format,
            'n_jobs': args.jobs,
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if overrides:
            config = replace(config, **overrides)
        if args.sample_rate is not None:
            config = replace(config, sample_interval=args.sample_rate)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    df = process_directory(args.in_dir, config=config)

    if args.qc_report:
        generate_qc_report(df, args.qc_report)

    return 1 if (df['status'] == 'failed').any() else 0


# Command-line interface
if __name__ == "__main__":
    sys.exit(main())
