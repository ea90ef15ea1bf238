"""
Pitch-synchronous harmonic analysis, Rd estimation and cepstral envelope features.

Provides:
- Harmonic analysis frames (one per pitch period) with retained spectra
- Rd (LF-model shape parameter) by Mean Squared Phase (MSP) fitting
- True-envelope estimation of a frame spectrum
- Mel-cepstral coefficients of a spectral envelope

The analysis frames are built once per file and shared by the Rd and the
spectral envelope stages.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

import numpy as np
import librosa
from scipy import fft as scipy_fft

from .alignment import EventSequence, round_half_up

logger = logging.getLogger(__name__)

EPS = 1e-12


@dataclass
class HarmonicAnalysisOptions:
    """Options of the harmonic frame builder."""
    dft_len: int = 4096
    win_periods: float = 3.0
    peak_picking: bool = True
    keep_spectrum: bool = True
    max_harmonics: Optional[int] = None


@dataclass
class AnalysisFrame:
    """
    One glottal-cycle analysis frame.

    Attributes
    ----------
    time : float
        Frame centre (s)
    f0 : float
        Local F0 (Hz)
    harmonics : np.ndarray
        Shape (n, 3): frequency (Hz), amplitude, phase (rad) of each harmonic
    spectrum : np.ndarray, optional
        Half spectrum (``dft_len // 2 + 1`` complex bins) when retained
    """
    time: float
    f0: float
    harmonics: np.ndarray
    spectrum: Optional[np.ndarray] = None


def _analysis_times(times: np.ndarray, f0: np.ndarray, duration: float) -> List[float]:
    """Step through the signal one local period at a time."""
    instants = []
    t = max(0.0, float(times[0]))
    while t <= duration:
        instants.append(t)
        local_f0 = float(np.interp(t, times, f0))
        t += 1.0 / max(local_f0, EPS)
    return instants


def harmonic_analysis(
    sig: np.ndarray,
    fs: int,
    f0s: np.ndarray,
    options: Optional[HarmonicAnalysisOptions] = None
) -> List[AnalysisFrame]:
    """
    Build pitch-synchronous analysis frames with harmonic peak picking.

    Parameters
    ----------
    sig : np.ndarray
        Speech signal
    fs : int
        Sample rate
    f0s : np.ndarray
        Shape (n, 2): time (s) and F0 (Hz); F0 must be strictly positive
    options : HarmonicAnalysisOptions, optional
        DFT length, window length in periods, spectrum retention

    Returns
    -------
    List[AnalysisFrame]
        One frame per pitch period
    """
    if options is None:
        options = HarmonicAnalysisOptions()

    sig = np.asarray(sig, dtype=float)
    f0s = np.asarray(f0s, dtype=float)
    if f0s.ndim != 2 or f0s.shape[1] != 2 or len(f0s) == 0:
        raise ValueError("f0s must be a non-empty (n, 2) array of (time, f0)")
    if np.any(f0s[:, 1] <= 0):
        raise ValueError("f0s contains non-positive F0 values")

    times, f0_track = f0s[:, 0], f0s[:, 1]
    duration = (len(sig) - 1) / fs

    frames = []
    for t in _analysis_times(times, f0_track, duration):
        f0 = float(np.interp(t, times, f0_track))
        half = max(1, int(round(options.win_periods * fs / f0 / 2)))
        dft_len = max(options.dft_len, int(2 ** np.ceil(np.log2(2 * half + 1))))

        centre = int(round(t * fs))
        idx = np.arange(centre - half, centre + half + 1)
        valid = (idx >= 0) & (idx < len(sig))
        segment = np.zeros(len(idx))
        segment[valid] = sig[idx[valid]]
        segment *= np.blackman(len(idx))

        # Centre of the window at sample 0 so phases refer to the frame time
        buffer = np.zeros(dft_len)
        buffer[:half + 1] = segment[half:]
        buffer[-half:] = segment[:half]
        spectrum = np.fft.rfft(buffer)

        harmonics = _pick_harmonics(spectrum, fs, dft_len, f0, options)
        frames.append(AnalysisFrame(
            time=t,
            f0=f0,
            harmonics=harmonics,
            spectrum=spectrum if options.keep_spectrum else None
        ))

    return frames


def _pick_harmonics(
    spectrum: np.ndarray,
    fs: int,
    dft_len: int,
    f0: float,
    options: HarmonicAnalysisOptions
) -> np.ndarray:
    magnitude = np.abs(spectrum)
    bin_hz = fs / dft_len
    n_harmonics = int((fs / 2 - f0 / 2) // f0)
    if options.max_harmonics is not None:
        n_harmonics = min(n_harmonics, options.max_harmonics)

    rows = []
    for h in range(1, n_harmonics + 1):
        if options.peak_picking:
            lo = int(np.floor((h - 0.5) * f0 / bin_hz))
            hi = int(np.ceil((h + 0.5) * f0 / bin_hz))
            k = lo + int(np.argmax(magnitude[lo:hi + 1]))
        else:
            k = int(round(h * f0 / bin_hz))
        k = min(k, len(spectrum) - 1)
        rows.append((k * bin_hz, magnitude[k], np.angle(spectrum[k])))

    return np.asarray(rows, dtype=float).reshape(-1, 3)


# ---------------------------------------------------------------------------
# Rd by Mean Squared Phase
# ---------------------------------------------------------------------------

RD_GRID = np.round(np.arange(0.3, 2.7 + 1e-9, 0.05), 3)


def lf_timing(rd: float):
    """
    LF-model timing parameters (fractions of the period) from Rd.

    Returns
    -------
    tp, te, ta : float
        Peak flow instant, excitation instant and return phase constant
    """
    rap = (-1.0 + 4.8 * rd) / 100.0
    rkp = (22.4 + 11.8 * rd) / 100.0
    rgp = 0.25 * rkp / (0.11 * rd / (0.5 + 1.2 * rkp) - rap)
    tp = 1.0 / (2.0 * rgp)
    te = min(tp * (1.0 + rkp), 0.99)
    ta = max(rap, 1e-3)
    return tp, te, ta


def glottal_pulse_derivative(rd: float, n_points: int = 1024) -> np.ndarray:
    """One normalised period of an LF-like glottal flow derivative."""
    tp, te, ta = lf_timing(rd)
    t = np.arange(n_points) / n_points

    flow = np.zeros(n_points)
    rising = t < tp
    flow[rising] = 0.5 * (1.0 - np.cos(np.pi * t[rising] / tp))
    falling = (t >= tp) & (t < te)
    flow[falling] = np.cos(0.5 * np.pi * (t[falling] - tp) / (te - tp))

    derivative = np.diff(np.append(flow, flow[0]))

    # Return phase: exponential recovery after the excitation
    decay = np.exp(-1.0 / (ta * n_points))
    smoothed = np.zeros(n_points)
    state = 0.0
    start = int(te * n_points)
    for i in range(n_points):
        j = (start + i) % n_points
        state = decay * state + (1.0 - decay) * derivative[j]
        smoothed[j] = state
    return smoothed


@lru_cache(maxsize=8)
def _model_phases(n_harmonics: int, n_points: int = 1024) -> np.ndarray:
    """Harmonic phases of the model pulse for every Rd of the grid."""
    phases = np.zeros((len(RD_GRID), n_harmonics))
    for i, rd in enumerate(RD_GRID):
        coefficients = np.fft.rfft(glottal_pulse_derivative(rd, n_points))
        phases[i] = np.angle(coefficients[1:n_harmonics + 1])
    return phases


def _wrap(phase):
    return np.angle(np.exp(1j * np.asarray(phase)))


def rd_msp(
    frames: List[AnalysisFrame],
    fs: int,
    max_harmonics: int = 30
) -> EventSequence:
    """
    Estimate Rd and its confidence per frame by Mean Squared Phase.

    For each Rd of the grid the model's harmonic phases are removed from the
    observed ones; the linear phase (time offset) is removed by differencing
    across harmonics and the circular variance of what remains is the error.

    Parameters
    ----------
    frames : List[AnalysisFrame]
        Harmonic analysis frames
    fs : int
        Sample rate
    max_harmonics : int
        Number of harmonics used in the fit

    Returns
    -------
    EventSequence
        Columns (Rd, confidence), timed at the frame centres
    """
    model = _model_phases(max_harmonics)

    times, values = [], []
    for frame in frames:
        times.append(frame.time)
        n = min(len(frame.harmonics), max_harmonics)
        if n < 3 or np.sum(frame.harmonics[:n, 1]) < EPS:
            values.append((np.nan, np.nan))
            continue

        observed = frame.harmonics[:n, 2]
        residual = _wrap(observed[np.newaxis, :] - model[:, :n])
        step = _wrap(np.diff(residual, axis=1))
        centre = np.angle(np.mean(np.exp(1j * step), axis=1))
        errors = np.mean(_wrap(step - centre[:, np.newaxis]) ** 2, axis=1)

        best = int(np.argmin(errors))
        mean_error = np.mean(errors)
        confidence = 1.0 - errors[best] / mean_error if mean_error > EPS else 0.0
        values.append((RD_GRID[best], float(np.clip(confidence, 0.0, 1.0))))

    return EventSequence(np.asarray(values, dtype=float).reshape(-1, 2), times, name='Rd')


# ---------------------------------------------------------------------------
# Spectral envelope and cepstrum
# ---------------------------------------------------------------------------

def half_to_full_spectrum(half_spectrum: np.ndarray) -> np.ndarray:
    """Rebuild a full Hermitian spectrum from its ``N/2 + 1`` half."""
    half_spectrum = np.asarray(half_spectrum)
    return np.concatenate([half_spectrum, np.conj(half_spectrum[-2:0:-1])])


def true_envelope(
    spectrum: np.ndarray,
    order: int,
    max_iter: int = 100,
    tolerance_db: float = 2.0
) -> np.ndarray:
    """
    True-envelope estimate of a full spectrum.

    Iteratively smooths the log amplitude spectrum with a cepstral lifter of
    the given order, each time raising the spectrum to the current envelope,
    until the envelope covers the spectral peaks within ``tolerance_db``.

    Parameters
    ----------
    spectrum : np.ndarray
        Full (Hermitian) complex or amplitude spectrum
    order : int
        Cepstral order of the envelope

    Returns
    -------
    np.ndarray
        Full amplitude envelope, same length as ``spectrum``
    """
    log_amp = np.log(np.abs(np.asarray(spectrum)) + EPS)
    n = len(log_amp)
    order = int(np.clip(order, 1, n // 2 - 1))
    tolerance = tolerance_db * np.log(10.0) / 20.0

    target = log_amp.copy()
    envelope = log_amp
    for _ in range(max_iter):
        cepstrum = np.fft.ifft(target).real
        cepstrum[order + 1:n - order] = 0.0
        envelope = np.fft.fft(cepstrum).real
        if np.max(log_amp - envelope) < tolerance:
            break
        target = np.maximum(log_amp, envelope)

    return np.exp(envelope)


@lru_cache(maxsize=16)
def _mel_filterbank(fs: int, n_fft: int, n_mels: int) -> np.ndarray:
    return librosa.filters.mel(sr=fs, n_fft=n_fft, n_mels=n_mels, fmin=0.0, fmax=fs / 2.0)


def envelope_to_mfcc(
    envelope: np.ndarray,
    fs: int,
    order: int = 24,
    n_mels: int = 40
) -> np.ndarray:
    """
    Mel-cepstral coefficients ``c0..c_order`` of a full amplitude envelope.

    Returns
    -------
    np.ndarray
        Shape (order + 1,)
    """
    envelope = np.abs(np.asarray(envelope, dtype=float))
    n_fft = len(envelope)
    half = envelope[:n_fft // 2 + 1]
    n_mels = max(n_mels, order + 1)

    energies = _mel_filterbank(int(fs), n_fft, n_mels) @ (half ** 2)
    log_energies = np.log(energies + EPS)
    return scipy_fft.dct(log_energies, type=2, norm='ortho')[:order + 1]


def frame_cepstral_order(fs: int, f0: float) -> int:
    """Envelope order adapted to the frame's pitch: ``round(0.5 * fs / f0)``."""
    return int(round_half_up(0.5 * fs / f0))


def frame_cepstra(
    frames: List[AnalysisFrame],
    fs: int,
    order: int = 24,
    envelope_fn=true_envelope,
    cepstrum_fn=envelope_to_mfcc
) -> np.ndarray:
    """
    Cepstral coefficients of every analysis frame's spectral envelope.

    Returns
    -------
    np.ndarray
        Shape (len(frames), order + 1)
    """
    coefficients = np.zeros((len(frames), order + 1))
    for m, frame in enumerate(frames):
        if frame.spectrum is None:
            raise ValueError("Analysis frames were built without retained spectra")
        te_order = frame_cepstral_order(fs, frame.f0)
        envelope = envelope_fn(half_to_full_spectrum(frame.spectrum), te_order)
        coefficients[m] = np.ravel(cepstrum_fn(envelope, fs, order))
    return coefficients
