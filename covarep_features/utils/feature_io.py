"""
Persistence of per-file feature matrices.

Formats:
- ``mat``: MATLAB file with variables ``features`` [N x 36] and ``names`` (cell array)
- ``csv``: one header row of feature names, one row per target-grid point
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd
from scipy import io as scipy_io

from ..alignment import FeatureMatrix

logger = logging.getLogger(__name__)


def output_path_for(audio_path, output_dir=None, fmt: str = 'mat') -> Path:
    """Artifact path: the source file's name with the format's extension."""
    audio_path = Path(audio_path)
    directory = Path(output_dir) if output_dir else audio_path.parent
    return directory / f'{audio_path.stem}.{fmt}'


def save_feature_matrix(matrix: FeatureMatrix, path, fmt: str = 'mat') -> Path:
    """
    Write a feature matrix to disk.

    Parameters
    ----------
    matrix : FeatureMatrix
        Assembled features
    path : str or Path
        Output file
    fmt : str
        'mat' or 'csv'

    Returns
    -------
    Path
        The written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == 'mat':
        names = np.empty((1, len(matrix.names)), dtype=object)
        names[0, :] = list(matrix.names)
        scipy_io.savemat(str(path), {'features': np.asarray(matrix.features), 'names': names})
    elif fmt == 'csv':
        pd.DataFrame(matrix.features, columns=list(matrix.names)).to_csv(path, index=False)
    else:
        raise ValueError(f"Unknown output format: {fmt}")

    logger.debug(f"Saved features to {path}")
    return path


def load_feature_matrix(path) -> FeatureMatrix:
    """Read a feature matrix written by :func:`save_feature_matrix`."""
    path = Path(path)
    if path.suffix == '.mat':
        content = scipy_io.loadmat(str(path))
        names = tuple(str(np.squeeze(n)) for n in np.ravel(content['names']))
        features = np.atleast_2d(content['features']).astype(float)
    elif path.suffix == '.csv':
        df = pd.read_csv(path)
        names = tuple(df.columns)
        features = df.to_numpy(dtype=float)
    else:
        raise ValueError(f"Unknown feature file type: {path.suffix}")

    return FeatureMatrix(features=features, names=names)
