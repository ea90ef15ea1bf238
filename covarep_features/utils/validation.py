"""
Validation and quality control utilities for feature matrices.

Provides:
- Schema and shape checks
- NaN/Inf detection
- Binary voicing check
- Plausible range flagging
- Corpus QC report generation
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Any, Optional, Tuple
import logging

from ..alignment import FEATURE_NAMES, FeatureMatrix

logger = logging.getLogger(__name__)


# Plausible ranges of the non-cepstral features (zero-filled entries are skipped)
FEATURE_RANGES = {
    'F0': (0.0, 500.0),  # Hz
    'VUV': (0.0, 1.0),
    'NAQ': (0.0, 1.0),
    'QOQ': (0.0, 1.0),
    'H1H2': (-40.0, 60.0),  # dB
    'PSP': (-5.0, 5.0),
    'MDQ': (0.0, 1.0),
    'peakSlope': (-5.0, 5.0),
    'Rd': (0.3, 2.7),
    'Rd_conf': (0.0, 1.0),
    'creak_prob': (0.0, 1.0),
}


def validate_feature_matrix(
    matrix: FeatureMatrix,
    strict: bool = False,
    max_out_of_range: float = 0.05
) -> Tuple[bool, List[str]]:
    """
    Validate an assembled feature matrix.

    Parameters
    ----------
    matrix : FeatureMatrix
        Assembled features
    strict : bool
        If True, range issues also make the matrix invalid.
        Schema, NaN and voicing issues always do.
    max_out_of_range : float
        Fraction of non-zero entries allowed outside ``FEATURE_RANGES``

    Returns
    -------
    is_valid : bool
        Whether the matrix passes validation
    issues : List[str]
        List of validation issue messages
    """
    issues = []
    hard_issues = 0
    features = np.asarray(matrix.features)

    if tuple(matrix.names) != FEATURE_NAMES:
        issues.append(f"names do not match the {len(FEATURE_NAMES)}-column schema")
        hard_issues += 1
    if features.ndim != 2 or features.shape[1] != len(matrix.names):
        issues.append(f"features shape {features.shape} does not match {len(matrix.names)} names")
        return False, issues

    if np.isnan(features).any():
        issues.append(f"{int(np.isnan(features).sum())} NaN entries")
        hard_issues += 1
    if np.isinf(features).any():
        issues.append(f"{int(np.isinf(features).sum())} Inf entries")
        hard_issues += 1

    if 'VUV' in matrix.names:
        vuv = features[:, list(matrix.names).index('VUV')]
        if not np.isin(vuv, (0.0, 1.0)).all():
            issues.append("VUV has values other than 0 and 1")
            hard_issues += 1

    for name, (min_val, max_val) in FEATURE_RANGES.items():
        if name not in matrix.names:
            continue
        values = features[:, list(matrix.names).index(name)]
        values = values[values != 0]
        if len(values) == 0:
            continue
        outside = np.mean((values < min_val) | (values > max_val))
        if outside > max_out_of_range:
            issues.append(
                f"{name}: {100 * outside:.1f}% of values outside expected range [{min_val}, {max_val}]"
            )

    range_issues = len(issues) - hard_issues
    is_valid = hard_issues == 0 and (range_issues == 0 or not strict)

    if issues:
        logger.warning(f"Validation issues found: {len(issues)}")
        for issue in issues[:5]:  # Log first 5 issues
            logger.warning(f"  - {issue}")
        if len(issues) > 5:
            logger.warning(f"  ... and {len(issues) - 5} more issues")

    return is_valid, issues


def generate_qc_report(
    df: pd.DataFrame,
    output_path: Optional[str] = None
) -> Dict[str, Any]:
    """
    Generate a quality control report for a corpus run.

    Parameters
    ----------
    df : pd.DataFrame
        Per-file summary returned by ``process_directory``
    output_path : str, optional
        Path to save report (as text file)

    Returns
    -------
    Dict[str, Any]
        QC report as dictionary
    """
    report = {
        'summary': {},
        'failures': [],
        'frame_stats': {},
    }

    report['summary']['total_files'] = len(df)
    if len(df):
        report['summary']['by_status'] = df['status'].value_counts().to_dict()
        report['summary']['creak_fallbacks'] = int(df['creak_fallback'].fillna(False).astype(bool).sum())
        report['summary']['no_voiced_speech'] = int(df['voiced'].eq(False).sum())
        report['summary']['validation_issues'] = int(df['n_issues'].fillna(0).gt(0).sum())
        report['summary']['total_duration_seconds'] = float(
            pd.to_numeric(df['duration_seconds'], errors='coerce').sum()
        )

        failed = df[df['status'] == 'failed']
        report['failures'] = [
            {'file': row['file'], 'error': row['error']}
            for _, row in failed.iterrows()
        ]

        done = df[df['status'] == 'done']
        if len(done):
            report['frame_stats'] = {
                'mean': float(done['n_frames'].mean()),
                'min': int(done['n_frames'].min()),
                'max': int(done['n_frames'].max()),
                'total': int(done['n_frames'].sum()),
            }

    # Save report if path provided
    if output_path:
        with open(output_path, 'w') as f:
            f.write("=" * 60 + "\n")
            f.write("GLOTTAL FEATURE EXTRACTION QC REPORT\n")
            f.write("=" * 60 + "\n\n")

            f.write("SUMMARY\n")
            f.write("-" * 40 + "\n")
            for key, value in report['summary'].items():
                f.write(f"  {key}: {value}\n")
            f.write("\n")

            f.write("FAILURES\n")
            f.write("-" * 40 + "\n")
            f.write(f"  Failed files: {len(report['failures'])}\n")
            for item in report['failures'][:10]:
                f.write(f"  - {item['file']}: {item['error']}\n")
            f.write("\n")

            if report['frame_stats']:
                f.write("FRAMES PER FILE\n")
                f.write("-" * 40 + "\n")
                stats = report['frame_stats']
                f.write(f"  mean={stats['mean']:.1f}, range=[{stats['min']}, {stats['max']}], "
                        f"total={stats['total']}\n")

        logger.info(f"QC report saved to {output_path}")

    return report
