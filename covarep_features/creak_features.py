"""
Creaky voice detection.

Frame-wise creak probability from two cues of creaky phonation:
- Residual peak prominence: sparse, strong excitations in the LP residual
- Low and irregular periodicity: residual autocorrelation peak at long lags

The detector is known to be fragile on some inputs and raises on signals it
cannot analyse; the pipeline isolates its failures.
"""

import logging

import numpy as np
from scipy import signal as scipy_signal

from .alignment import EventSequence
from .source_analysis import lpc_residual

logger = logging.getLogger(__name__)

EPS = 1e-12


def _sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def residual_peak_prominence(frame: np.ndarray) -> float:
    """Ratio of the largest residual magnitude to the frame RMS."""
    rms = np.sqrt(np.mean(frame ** 2))
    if rms < EPS:
        return 0.0
    return float(np.max(np.abs(frame)) / rms)


def residual_periodicity(frame: np.ndarray, fs: int, f0_min: float = 20.0, f0_max: float = 500.0):
    """
    Autocorrelation-based periodicity of a residual frame.

    Returns
    -------
    f0 : float
        Frequency of the strongest autocorrelation peak (0 if none)
    strength : float
        Normalised autocorrelation at that lag
    """
    frame = frame - np.mean(frame)
    energy = np.sum(frame ** 2)
    if energy < EPS:
        return 0.0, 0.0

    autocorr = scipy_signal.correlate(frame, frame, mode='full', method='fft')[len(frame) - 1:] / energy
    lag_min = int(fs / f0_max)
    lag_max = min(len(autocorr) - 1, int(fs / f0_min))
    if lag_max <= lag_min:
        return 0.0, 0.0

    lag = lag_min + int(np.argmax(autocorr[lag_min:lag_max + 1]))
    return fs / lag, float(autocorr[lag])


def detect_creaky_voice(
    sig: np.ndarray,
    fs: int,
    frame_len: float = 0.064,
    frame_shift: float = 0.01,
    creak_f0: float = 70.0
) -> EventSequence:
    """
    Detect creaky voice and return its frame-wise probability.

    Parameters
    ----------
    sig : np.ndarray
        Speech signal
    fs : int
        Sample rate
    frame_len : float
        Analysis frame length (s); long enough to cover creak periods
    frame_shift : float
        Frame shift (s)
    creak_f0 : float
        F0 (Hz) below which periodicity counts as creak-like

    Returns
    -------
    EventSequence
        Creak probability in [0, 1] per frame, timed at the frame centres

    Raises
    ------
    ValueError
        If the signal is shorter than one analysis frame
    """
    sig = np.asarray(sig, dtype=float)
    win = int(round(frame_len * fs))
    hop = max(1, int(round(frame_shift * fs)))
    if len(sig) < win:
        raise ValueError(
            f"Signal of {len(sig)} samples is too short for creak detection ({win} needed)"
        )

    residual = lpc_residual(sig, round(0.025 * fs), round(0.005 * fs), round(fs / 1000) + 2)
    level = np.sqrt(np.mean(sig ** 2))

    times, probabilities = [], []
    for start in range(0, len(sig) - win + 1, hop):
        frame = residual[start:start + win]
        frame_level = np.sqrt(np.mean(sig[start:start + win] ** 2))

        prominence = residual_peak_prominence(frame)
        f0, strength = residual_periodicity(frame, fs)

        low_f0 = _sigmoid((creak_f0 - f0) / 10.0) if f0 > 0 else 0.0
        irregular = 1.0 - np.clip(strength, 0.0, 1.0)
        peaky = _sigmoid(1.5 * (prominence - 4.0))
        # Quiet frames cannot be creaky
        audible = _sigmoid(20.0 * (frame_level / (level + EPS) - 0.2)) if level > EPS else 0.0

        probabilities.append(float(peaky * max(low_f0, irregular) * audible))
        times.append((start + win / 2) / fs)

    return EventSequence(probabilities, times, name='creak_prob')
