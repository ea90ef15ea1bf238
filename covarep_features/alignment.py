"""
Grid unification and feature-matrix assembly.

Every sub-analysis of the pipeline reports on its own native time base:

- the pitch tracker on a uniform frame grid
- glottal parameters and MDQ on the glottal closure instant (GCI) grid
- Rd on the per-period analysis-frame grid
- the creak detector and peak slope on their own frame grids
- the cepstral coefficients on the analysis-frame grid, without a time column

This module projects all of them onto one uniform target grid (in sample
positions), stacks them in the fixed 36-column schema order and zero-fills
whatever interpolation left undefined.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


MFCC_ORDER = 24

FEATURE_NAMES: Tuple[str, ...] = (
    'F0', 'VUV', 'NAQ', 'QOQ', 'H1H2', 'PSP', 'MDQ', 'peakSlope', 'Rd',
    'Rd_conf', 'creak_prob',
) + tuple(f'MFCC_{i}' for i in range(MFCC_ORDER + 1))


def round_half_up(values):
    """Round half away from zero (numpy rounds half to even)."""
    values = np.asarray(values, dtype=float)
    return np.sign(values) * np.floor(np.abs(values) + 0.5)


@dataclass
class EventSequence:
    """
    A sub-analysis output on its native time base.

    Parameters
    ----------
    values : np.ndarray
        Shape (n,) or (n, k). One row per native event.
    times : np.ndarray, optional
        Event times in seconds, shape (n,). ``None`` for sequences whose
        axis has to be synthesized (cepstral frames).
    name : str
        Label used in log messages.
    """
    values: np.ndarray
    times: Optional[np.ndarray] = None
    name: str = ''

    def __post_init__(self):
        self.values = np.asarray(self.values, dtype=float)
        if self.values.ndim == 1:
            self.values = self.values[:, np.newaxis]
        elif self.values.ndim != 2:
            raise ValueError(f"{self.name or 'sequence'}: values must be 1D or 2D")
        if self.times is not None:
            self.times = np.asarray(self.times, dtype=float).ravel()
            if len(self.times) != len(self.values):
                raise ValueError(
                    f"{self.name or 'sequence'}: {len(self.times)} times "
                    f"for {len(self.values)} values"
                )

    def __len__(self) -> int:
        return len(self.values)

    @property
    def n_columns(self) -> int:
        return self.values.shape[1]

    @classmethod
    def empty(cls, n_columns: int = 1, name: str = '') -> 'EventSequence':
        return cls(np.zeros((0, n_columns)), np.zeros(0), name=name)

    def column(self, index: int) -> 'EventSequence':
        return EventSequence(self.values[:, index], self.times, name=self.name)


class TimeColumnAxis:
    """Interpolation axis taken from the sequence's own time column."""

    def __init__(self, rounded: bool = False):
        self.rounded = rounded

    def positions(self, sequence: EventSequence, fs: int, n_samples: int) -> np.ndarray:
        if sequence.times is None:
            raise ValueError(f"{sequence.name or 'sequence'} has no time column")
        positions = sequence.times * fs
        if self.rounded:
            positions = round_half_up(positions)
        return positions

    def __repr__(self):
        return f'TimeColumnAxis(rounded={self.rounded})'


class LinearSpreadAxis:
    """
    Frames assumed evenly spread over the whole waveform.

    Used for the cepstral frames, which carry no time column. The true
    glottal-cycle timing of the frames is ignored.
    """

    def positions(self, sequence: EventSequence, fs: int, n_samples: int) -> np.ndarray:
        return round_half_up(np.linspace(1, n_samples, len(sequence)))

    def __repr__(self):
        return 'LinearSpreadAxis()'


TIME_AXIS = TimeColumnAxis()
ROUNDED_TIME_AXIS = TimeColumnAxis(rounded=True)
SPREAD_AXIS = LinearSpreadAxis()


def target_grid(n_samples: int, fs: int, sample_interval: float = 0.01) -> np.ndarray:
    """
    Uniform sample positions all features are resampled onto.

    Spacing is ``round(sample_interval * fs)`` samples, starting half a
    spacing in, up to and including ``n_samples``.

    Parameters
    ----------
    n_samples : int
        Waveform length
    fs : int
        Sample rate
    sample_interval : float
        Feature sampling interval in seconds

    Returns
    -------
    np.ndarray
        Sample positions (float) of the target grid
    """
    step = int(round_half_up(sample_interval * fs))
    if step < 1:
        raise ValueError(
            f"Sampling interval {sample_interval}s is shorter than one sample at {fs} Hz"
        )
    start = int(round_half_up(sample_interval / 2 * fs))
    return np.arange(start, n_samples + 1, step, dtype=float)


def interp_nan(x: np.ndarray, y: np.ndarray, xq: np.ndarray) -> np.ndarray:
    """
    Linear interpolation returning NaN outside ``[min(x), max(x)]``.

    ``x`` need not be sorted; repeated abscissae keep their first value.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    xq = np.asarray(xq, dtype=float)
    out = np.full(xq.shape, np.nan)

    finite = np.isfinite(x)
    x, y = x[finite], y[finite]
    if len(x) == 0:
        return out

    x, first = np.unique(x, return_index=True)
    y = y[first]

    if len(x) == 1:
        out[xq == x[0]] = y[0]
        return out

    inside = (xq >= x[0]) & (xq <= x[-1])
    out[inside] = np.interp(xq[inside], x, y)
    return out


def resample_sequence(
    sequence: EventSequence,
    grid: np.ndarray,
    fs: int,
    n_samples: int,
    axis=TIME_AXIS
) -> np.ndarray:
    """
    Resample an event sequence onto the target grid.

    Parameters
    ----------
    sequence : EventSequence
        Native-time-base sequence (any number of value columns)
    grid : np.ndarray
        Target sample positions from :func:`target_grid`
    fs : int
        Sample rate
    n_samples : int
        Waveform length, needed by axis rules that synthesize positions
    axis : TimeColumnAxis or LinearSpreadAxis
        Rule giving the native sample position of each event

    Returns
    -------
    np.ndarray
        Shape (len(grid), n_columns); NaN where the grid falls outside the
        native domain
    """
    out = np.full((len(grid), sequence.n_columns), np.nan)
    if len(sequence) == 0:
        return out

    positions = axis.positions(sequence, fs, n_samples)
    for k in range(sequence.n_columns):
        out[:, k] = interp_nan(positions, sequence.values[:, k], grid)
    return out


def binarize_voicing(vuv: np.ndarray, threshold: float = 0.5) -> np.ndarray:
    """Threshold interpolated voicing; undefined entries stay undefined."""
    vuv = np.asarray(vuv, dtype=float).copy()
    defined = ~np.isnan(vuv)
    vuv[defined] = (vuv[defined] >= threshold).astype(float)
    return vuv


@dataclass(frozen=True, eq=False)
class FeatureMatrix:
    """Assembled per-file features: ``features[N_out x 36]`` plus column names."""
    features: np.ndarray
    names: Tuple[str, ...] = FEATURE_NAMES
    positions: Optional[np.ndarray] = None
    fs: Optional[int] = None
    metadata: Dict[str, object] = field(default_factory=dict, compare=False)

    @property
    def n_frames(self) -> int:
        return self.features.shape[0]

    @property
    def times(self) -> Optional[np.ndarray]:
        if self.positions is None or not self.fs:
            return None
        return self.positions / self.fs

    def column(self, name: str) -> np.ndarray:
        return self.features[:, self.names.index(name)]

    def to_dataframe(self) -> pd.DataFrame:
        df = pd.DataFrame(self.features, columns=list(self.names))
        if self.times is not None:
            df.index = pd.Index(self.times, name='time')
        return df


def assemble_feature_matrix(
    columns: Mapping[str, np.ndarray],
    names: Sequence[str] = FEATURE_NAMES,
    positions: Optional[np.ndarray] = None,
    fs: Optional[int] = None,
    metadata: Optional[Dict[str, object]] = None
) -> FeatureMatrix:
    """
    Stack resampled columns in schema order and zero-fill NaN.

    The NaN replacement is one pass over the whole matrix, independent of
    which column produced the NaN.

    Parameters
    ----------
    columns : Mapping[str, np.ndarray]
        One 1D array per feature name, all of the target-grid length
    names : Sequence[str]
        Column order

    Returns
    -------
    FeatureMatrix
        Read-only feature matrix
    """
    missing = [name for name in names if name not in columns]
    if missing:
        raise KeyError(f"Missing feature columns: {missing}")

    lengths = {name: len(np.ravel(columns[name])) for name in names}
    if len(set(lengths.values())) > 1:
        raise ValueError(f"Feature columns differ in length: {lengths}")

    features = np.column_stack([np.ravel(columns[name]).astype(float) for name in names])
    features[np.isnan(features)] = 0.0
    features.setflags(write=False)

    return FeatureMatrix(
        features=features,
        names=tuple(names),
        positions=positions,
        fs=fs,
        metadata=dict(metadata or {})
    )


def mfcc_column_names(order: int = MFCC_ORDER) -> List[str]:
    return [f'MFCC_{i}' for i in range(order + 1)]
