"""
Source-level analysis of the speech waveform.

Provides the collaborators the pipeline runs before any parameterisation:

- Polarity detection (skewness of the LP residual)
- Pitch and voicing tracking:
  - pYIN (librosa) - default
  - Parselmouth (Praat) - autocorrelation pitch
- Glottal closure instant (GCI) detection from the mean-based signal
- Iterative adaptive inverse filtering (IAIF), GCI-synchronous
- Frame-wise linear prediction (LP) residual
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import librosa
from scipy import signal as scipy_signal
from scipy import stats

from .alignment import round_half_up

logger = logging.getLogger(__name__)

# Try to import parselmouth (optional pitch back-end)
try:
    import parselmouth
    from parselmouth.praat import call
    PARSELMOUTH_AVAILABLE = True
except ImportError:
    PARSELMOUTH_AVAILABLE = False
    logger.warning("Parselmouth not available. Using librosa for F0 extraction.")

EPS = 1e-12


@dataclass
class PitchTrack:
    """Native pitch track: frame times (s), F0 (Hz, 0 when unvoiced), voicing flag."""
    times: np.ndarray
    f0: np.ndarray
    vuv: np.ndarray

    def __post_init__(self):
        self.times = np.asarray(self.times, dtype=float).ravel()
        self.f0 = np.asarray(self.f0, dtype=float).ravel()
        self.vuv = np.asarray(self.vuv, dtype=float).ravel()
        if not (len(self.times) == len(self.f0) == len(self.vuv)):
            raise ValueError("Pitch track arrays differ in length")

    def __len__(self) -> int:
        return len(self.times)


# ---------------------------------------------------------------------------
# LP helpers
# ---------------------------------------------------------------------------

def _lpc(frame: np.ndarray, order: int) -> Optional[np.ndarray]:
    """LPC polynomial of a frame, or None for silent/ill-conditioned frames."""
    if len(frame) <= order or np.sum(frame ** 2) < EPS:
        return None
    try:
        a = librosa.lpc(np.ascontiguousarray(frame, dtype=float), order=order)
    except FloatingPointError:
        return None
    if not np.all(np.isfinite(a)):
        return None
    return a


def lpc_residual(
    sig: np.ndarray,
    win_len: int,
    shift: int,
    order: int
) -> np.ndarray:
    """
    Compute the LP residual by frame-wise inverse filtering and overlap-add.

    Each windowed frame is inverse filtered with its own LPC polynomial and
    the frame residual is scaled to the energy of the frame before being
    added back.

    Parameters
    ----------
    sig : np.ndarray
        Speech signal
    win_len : int
        Analysis window length in samples
    shift : int
        Window shift in samples
    order : int
        LP order

    Returns
    -------
    np.ndarray
        Residual signal, same length as ``sig``
    """
    sig = np.asarray(sig, dtype=float)
    win_len = int(round(win_len))
    shift = max(1, int(round(shift)))
    order = int(round(order))

    residual = np.zeros(len(sig))
    if len(sig) < win_len:
        return residual

    window = np.hanning(win_len)
    for start in range(0, len(sig) - win_len + 1, shift):
        frame = sig[start:start + win_len] * window
        a = _lpc(frame, order)
        if a is None:
            continue
        inv = scipy_signal.lfilter(a, [1.0], frame)
        inv_energy = np.sum(inv ** 2)
        if inv_energy < EPS:
            continue
        inv *= np.sqrt(np.sum(frame ** 2) / inv_energy)
        residual[start:start + win_len] += inv

    return residual


# ---------------------------------------------------------------------------
# Polarity
# ---------------------------------------------------------------------------

def detect_polarity(sig: np.ndarray, fs: int) -> int:
    """
    Detect speech polarity from the skewness of the LP residual.

    Glottal excitation shows up as sharp negative residual peaks for
    positive-polarity speech, so a positive skewness means the waveform
    is inverted.

    Returns
    -------
    int
        +1 or -1
    """
    residual = lpc_residual(
        sig,
        win_len=round(0.025 * fs),
        shift=round(0.005 * fs),
        order=round(fs / 1000) + 2
    )
    if np.std(residual) < EPS:
        return 1
    skewness = stats.skew(residual)
    return -1 if skewness > 0 else 1


# ---------------------------------------------------------------------------
# Pitch
# ---------------------------------------------------------------------------

def _pyin_frame_length(fs: int, f0_min: float) -> int:
    return int(2 ** np.ceil(np.log2(4 * fs / f0_min)))


def track_pitch_pyin(
    sig: np.ndarray,
    fs: int,
    f0_min: float = 50.0,
    f0_max: float = 500.0,
    frame_shift_ms: float = 10.0
) -> PitchTrack:
    """
    Track F0 and voicing with probabilistic YIN (pYIN).

    Parameters
    ----------
    sig : np.ndarray
        Audio signal
    fs : int
        Sample rate
    f0_min : float
        Minimum frequency for F0 search
    f0_max : float
        Maximum frequency for F0 search
    frame_shift_ms : float
        Hop between frames in milliseconds

    Returns
    -------
    PitchTrack
        F0 is 0 in unvoiced frames
    """
    hop_length = max(1, int(round(frame_shift_ms / 1000.0 * fs)))
    frame_length = _pyin_frame_length(fs, f0_min)

    f0, voiced_flag, _ = librosa.pyin(
        np.asarray(sig, dtype=float),
        fmin=f0_min,
        fmax=f0_max,
        sr=fs,
        frame_length=frame_length,
        hop_length=hop_length
    )

    # Replace NaN with 0 for unvoiced frames
    f0 = np.nan_to_num(f0, nan=0.0)
    vuv = voiced_flag.astype(float)
    f0[vuv == 0] = 0.0
    times = librosa.times_like(f0, sr=fs, hop_length=hop_length)

    return PitchTrack(times=times, f0=f0, vuv=vuv)


def track_pitch_parselmouth(
    sig: np.ndarray,
    fs: int,
    f0_min: float = 50.0,
    f0_max: float = 500.0,
    frame_shift_ms: float = 10.0
) -> PitchTrack:
    """Track F0 and voicing with Parselmouth (Praat)."""
    if not PARSELMOUTH_AVAILABLE:
        raise ImportError("Parselmouth is not available. Install with: pip install praat-parselmouth")

    sound = parselmouth.Sound(np.asarray(sig, dtype=float), sampling_frequency=fs)
    pitch = call(sound, "To Pitch", frame_shift_ms / 1000.0, f0_min, f0_max)

    n_frames = call(pitch, "Get number of frames")
    times = np.array([call(pitch, "Get time from frame number", i) for i in range(1, n_frames + 1)])
    f0 = np.array([call(pitch, "Get value in frame", i, "Hertz") for i in range(1, n_frames + 1)])

    f0 = np.nan_to_num(f0, nan=0.0)
    vuv = (f0 > 0).astype(float)
    return PitchTrack(times=times, f0=f0, vuv=vuv)


def track_pitch(
    sig: np.ndarray,
    fs: int,
    f0_min: float = 50.0,
    f0_max: float = 500.0,
    frame_shift_ms: float = 10.0,
    method: str = 'pyin'
) -> PitchTrack:
    """
    Track pitch with the specified method ('pyin' or 'parselmouth').
    """
    if method == 'pyin':
        return track_pitch_pyin(sig, fs, f0_min, f0_max, frame_shift_ms)
    elif method == 'parselmouth':
        if PARSELMOUTH_AVAILABLE:
            return track_pitch_parselmouth(sig, fs, f0_min, f0_max, frame_shift_ms)
        logger.warning("Parselmouth not available, falling back to pYIN")
        return track_pitch_pyin(sig, fs, f0_min, f0_max, frame_shift_ms)
    else:
        raise ValueError(f"Unknown F0 method: {method}")


# ---------------------------------------------------------------------------
# Glottal closure instants
# ---------------------------------------------------------------------------

def mean_based_signal(sig: np.ndarray, fs: int, f0_mean: float) -> np.ndarray:
    """Blackman-weighted moving average over 1.75 mean pitch periods, detrended."""
    half = int(round(1.75 * fs / f0_mean / 2))
    window = np.blackman(2 * half + 1)
    window /= np.sum(window)
    mean_based = np.convolve(np.asarray(sig, dtype=float), window, mode='same')

    # Remove low-frequency drift below a quarter of the mean F0
    if len(mean_based) > 30:
        sos = scipy_signal.butter(2, f0_mean / 4, btype='highpass', fs=fs, output='sos')
        mean_based = scipy_signal.sosfiltfilt(sos, mean_based)
    return mean_based


def detect_gcis(
    sig: np.ndarray,
    fs: int,
    f0_mean: float,
    use_residual: bool = True
) -> np.ndarray:
    """
    Locate glottal closure instants from the mean-based signal.

    One GCI is placed in every interval running from a minimum of the
    mean-based signal to the next maximum, at the strongest LP residual
    excitation of that interval (or at the interval start when
    ``use_residual`` is False).

    Parameters
    ----------
    sig : np.ndarray
        Speech signal (polarity corrected)
    fs : int
        Sample rate
    f0_mean : float
        Representative F0 of the speaker (Hz)
    use_residual : bool
        Refine positions on the LP residual

    Returns
    -------
    np.ndarray
        GCI times in seconds
    """
    if not np.isfinite(f0_mean) or f0_mean <= 0:
        raise ValueError(f"Invalid reference F0 for GCI detection: {f0_mean}")

    sig = np.asarray(sig, dtype=float)
    t0 = fs / f0_mean
    mean_based = mean_based_signal(sig, fs, f0_mean)
    if np.max(np.abs(mean_based)) < EPS:
        return np.zeros(0)

    distance = max(1, int(0.5 * t0))
    minima, _ = scipy_signal.find_peaks(-mean_based, distance=distance)
    maxima, _ = scipy_signal.find_peaks(mean_based, distance=distance)
    if len(minima) == 0 or len(maxima) == 0:
        return np.zeros(0)

    residual = None
    if use_residual:
        residual = lpc_residual(sig, round(0.025 * fs), round(0.005 * fs), round(fs / 1000) + 2)

    gcis = []
    for start in minima:
        following = maxima[maxima > start]
        if len(following) == 0:
            break
        stop = following[0]
        if stop - start > t0:
            stop = start + int(t0)
        if residual is not None and stop > start:
            gcis.append(start + int(np.argmax(np.abs(residual[start:stop]))))
        else:
            gcis.append(start)

    return np.asarray(gcis, dtype=float) / fs


# ---------------------------------------------------------------------------
# Inverse filtering
# ---------------------------------------------------------------------------

def _highpass(sig: np.ndarray, fs: int, cutoff: float = 40.0) -> np.ndarray:
    sos = scipy_signal.butter(4, cutoff, btype='highpass', fs=fs, output='sos')
    return scipy_signal.sosfiltfilt(sos, sig)


def _integrate(sig: np.ndarray, leakage: float) -> np.ndarray:
    return scipy_signal.lfilter([1.0], [1.0, -leakage], sig)


def _analysis_segments(
    n_samples: int,
    fs: int,
    gci: np.ndarray
) -> List[Tuple[int, int]]:
    """Two-period segments around each GCI, fixed 32 ms frames elsewhere."""
    segments = []
    if len(gci) >= 3:
        for k in range(1, len(gci) - 1):
            segments.append((int(gci[k - 1]), int(gci[k + 1])))
    else:
        frame = int(round(0.032 * fs))
        hop = frame // 2
        for start in range(0, max(1, n_samples - frame + 1), hop):
            segments.append((start, min(n_samples, start + frame)))
    return segments


def _iaif_frame(
    frame: np.ndarray,
    raw: np.ndarray,
    vt_order: int,
    gl_order: int,
    leakage: float
) -> Optional[np.ndarray]:
    """One IAIF pass on a windowed frame; the final filter is applied to ``raw``."""
    g1 = _lpc(frame, 1)
    if g1 is None:
        return None
    y1 = scipy_signal.lfilter(g1, [1.0], frame)

    vt1 = _lpc(y1, vt_order)
    if vt1 is None:
        return None
    g1_flow = _integrate(scipy_signal.lfilter(vt1, [1.0], frame), leakage)

    g2 = _lpc(g1_flow, gl_order)
    if g2 is None:
        return None
    y2 = _integrate(scipy_signal.lfilter(g2, [1.0], frame), leakage)

    vt2 = _lpc(y2, vt_order)
    if vt2 is None:
        return None
    return scipy_signal.lfilter(vt2, [1.0], raw)


def iaif(
    sig: np.ndarray,
    fs: int,
    gci_times: np.ndarray,
    vt_order: int,
    gl_order: int,
    leakage: float = 0.99,
    hp_filter: bool = True
) -> Tuple[np.ndarray, np.ndarray]:
    """
    GCI-synchronous iterative adaptive inverse filtering.

    Parameters
    ----------
    sig : np.ndarray
        Speech signal
    fs : int
        Sample rate
    gci_times : np.ndarray
        Glottal closure instants in seconds
    vt_order : int
        Vocal tract LP order
    gl_order : int
        Glottal source LP order
    leakage : float
        Leaky integrator coefficient
    hp_filter : bool
        High-pass filter the signal before analysis

    Returns
    -------
    glottal_flow : np.ndarray
        Glottal flow estimate
    glottal_derivative : np.ndarray
        Glottal flow derivative estimate
    """
    sig = np.asarray(sig, dtype=float)
    n = len(sig)
    if hp_filter and n > 27:
        sig = _highpass(sig, fs)

    gci = np.sort(np.round(np.asarray(gci_times, dtype=float) * fs)).astype(int)
    gci = gci[(gci >= 0) & (gci < n)]

    derivative = np.zeros(n)
    weight = np.zeros(n)
    for start, stop in _analysis_segments(n, fs, gci):
        length = stop - start
        if length <= vt_order + 1:
            continue
        window = np.hanning(length)
        raw = sig[start:stop]
        dg = _iaif_frame(raw * window, raw, vt_order, gl_order, leakage)
        if dg is None:
            continue
        derivative[start:stop] += dg * window
        weight[start:stop] += window

    covered = weight > EPS
    derivative[covered] /= weight[covered]
    flow = _integrate(derivative, leakage)
    return flow, derivative


def clean_gcis(
    gci_times: Sequence[float],
    fs: int,
    voicing_mask: np.ndarray
) -> np.ndarray:
    """
    Convert GCI times to sample indices and keep the voiced, unique ones.

    Parameters
    ----------
    gci_times : Sequence[float]
        Candidate GCI times in seconds
    fs : int
        Sample rate
    voicing_mask : np.ndarray
        Interpolated voicing at sample positions 1..N (NaN where undefined)

    Returns
    -------
    np.ndarray
        Sorted unique GCI sample indices (int)
    """
    n_samples = len(voicing_mask)
    gci = round_half_up(np.asarray(gci_times, dtype=float) * fs)
    gci = np.clip(gci, 1, max(1, n_samples)).astype(int)
    if n_samples == 0 or len(gci) == 0:
        return np.zeros(0, dtype=int)

    # NaN < 0.5 is False: instants outside the voicing track are kept
    unvoiced = voicing_mask[gci - 1] < 0.5
    return np.unique(gci[~unvoiced])
