"""
Glottal source and wavelet-based voice quality parameters.

Extracts:
- NAQ: Normalised amplitude quotient
- QOQ: Quasi-open quotient
- H1H2: Level difference between the first two glottal flow harmonics (dB)
- HRF: Harmonic richness factor (dB)
- PSP: Parabolic spectral parameter
- MDQ: Maxima dispersion quotient of the LP residual wavelet maxima
- peakSlope: Slope of wavelet peak amplitudes across octave bands

The glottal parameters are computed once per GCI-bounded cycle; MDQ once
per GCI; peak slope on its own 10 ms frame grid.

These features are relevant for:
- Breathy/tense voice quality (NAQ, QOQ, H1H2, PSP)
- Creaky and pressed phonation (MDQ, peakSlope)
"""

import logging
from typing import NamedTuple

import numpy as np
from scipy import signal as scipy_signal
from scipy import stats

from .alignment import EventSequence

logger = logging.getLogger(__name__)

EPS = 1e-12


class GlottalParameters(NamedTuple):
    """Per-cycle glottal parameters, each on the GCI grid."""
    naq: EventSequence
    qoq: EventSequence
    h1h2: EventSequence
    hrf: EventSequence
    psp: EventSequence


def _harmonic_amplitudes(segment: np.ndarray, fs: int, f0: float, n_harmonics: int) -> np.ndarray:
    """Peak amplitudes around the first ``n_harmonics`` multiples of ``f0``."""
    n_fft = max(4096, int(2 ** np.ceil(np.log2(len(segment)))))
    spectrum = np.abs(np.fft.rfft(segment * np.hanning(len(segment)), n_fft))
    bin_hz = fs / n_fft

    amplitudes = np.zeros(n_harmonics)
    for h in range(1, n_harmonics + 1):
        lo = int(max(0, np.floor((h - 0.5) * f0 / bin_hz)))
        hi = int(min(len(spectrum) - 1, np.ceil((h + 0.5) * f0 / bin_hz)))
        if hi > lo:
            amplitudes[h - 1] = np.max(spectrum[lo:hi + 1])
    return amplitudes


def _parabolic_spectral_parameter(cycle: np.ndarray, fs: int, f0: float) -> float:
    """
    PSP: fitted parabola curvature of the low-frequency cycle spectrum,
    relative to the curvature of a DC flow of the same length.
    """
    def fit_curvature(x):
        n_fft = max(1024, int(2 ** np.ceil(np.log2(len(x) * 4))))
        spectrum = np.abs(np.fft.rfft(x, n_fft))
        if spectrum[0] < EPS:
            return np.nan
        bins = max(3, int(np.ceil(2 * f0 * n_fft / fs)))
        level = 20 * np.log10(spectrum[:bins] / spectrum[0] + EPS)
        freq = np.arange(bins)
        # level = a * f^2 through the origin
        return float(np.sum(level * freq ** 2) / (np.sum(freq ** 4) + EPS))

    a = fit_curvature(cycle - np.min(cycle))
    a_max = fit_curvature(np.ones(len(cycle)))
    if not np.isfinite(a) or not np.isfinite(a_max) or abs(a_max) < EPS:
        return np.nan
    return a / a_max


def glottal_parameters(
    glottal_flow: np.ndarray,
    glottal_derivative: np.ndarray,
    fs: int,
    gci_times: np.ndarray,
    max_period: float = 0.02
) -> GlottalParameters:
    """
    Compute conventional glottal source parameters per glottal cycle.

    Each cycle runs from one GCI to the next; cycles longer than
    ``max_period`` seconds (pauses between voiced stretches) are skipped.

    Parameters
    ----------
    glottal_flow : np.ndarray
        Glottal flow estimate
    glottal_derivative : np.ndarray
        Glottal flow derivative estimate
    fs : int
        Sample rate
    gci_times : np.ndarray
        Glottal closure instants (s)
    max_period : float
        Longest cycle considered voiced (s)

    Returns
    -------
    GlottalParameters
        NAQ, QOQ, H1H2, HRF and PSP sequences timed at the cycle-opening GCI
    """
    flow = np.asarray(glottal_flow, dtype=float)
    derivative = np.asarray(glottal_derivative, dtype=float)
    gci = np.round(np.asarray(gci_times, dtype=float) * fs).astype(int)
    gci = gci[(gci >= 0) & (gci < len(flow))]

    times, naq, qoq, h1h2, hrf, psp = [], [], [], [], [], []
    for k in range(len(gci) - 1):
        start, stop = gci[k], gci[k + 1]
        period = stop - start
        if period < 4 or period > max_period * fs:
            continue

        cycle = flow[start:stop]
        f_ac = np.max(cycle) - np.min(cycle)
        d_peak = np.max(np.abs(derivative[start:stop]))

        naq.append(f_ac / (d_peak * period) if d_peak > EPS else np.nan)

        # Quasi-open phase: flow above 50% of its AC amplitude
        if f_ac > EPS:
            qoq.append(np.sum(cycle - np.min(cycle) > 0.5 * f_ac) / period)
        else:
            qoq.append(np.nan)

        f0 = fs / period
        two_cycles = flow[start:min(len(flow), start + 2 * period)]
        n_harmonics = max(2, int((fs / 2) // f0) - 1)
        amplitudes = _harmonic_amplitudes(two_cycles, fs, f0, min(n_harmonics, 40))
        if amplitudes[0] > EPS and amplitudes[1] > EPS:
            h1h2.append(20 * np.log10(amplitudes[0] / amplitudes[1]))
            hrf.append(10 * np.log10(np.sum(amplitudes[1:] ** 2) / amplitudes[0] ** 2 + EPS))
        else:
            h1h2.append(np.nan)
            hrf.append(np.nan)

        psp.append(_parabolic_spectral_parameter(cycle, fs, f0))
        times.append(start / fs)

    times = np.asarray(times)
    return GlottalParameters(
        naq=EventSequence(naq, times, name='NAQ'),
        qoq=EventSequence(qoq, times, name='QOQ'),
        h1h2=EventSequence(h1h2, times, name='H1H2'),
        hrf=EventSequence(hrf, times, name='HRF'),
        psp=EventSequence(psp, times, name='PSP'),
    )


# ---------------------------------------------------------------------------
# Wavelet measures
# ---------------------------------------------------------------------------

def _wavelet_kernel(fs: int, centre_hz: float) -> np.ndarray:
    """Cosine-modulated Gaussian wavelet centred on ``centre_hz``."""
    tau = 1.0 / (2.0 * centre_hz)
    half = int(np.ceil(3 * tau * fs))
    t = np.arange(-half, half + 1) / fs
    kernel = np.cos(2 * np.pi * centre_hz * t) * np.exp(-t ** 2 / (2 * tau ** 2))
    norm = np.sqrt(np.sum(kernel ** 2))
    return kernel / norm if norm > 0 else kernel


def _octave_centres(fs: int, n_scales: int) -> np.ndarray:
    return fs / 2.0 / (2.0 ** np.arange(1, n_scales + 1))


def wavelet_decomposition(sig: np.ndarray, fs: int, n_scales: int = 6) -> np.ndarray:
    """
    Octave-band wavelet responses of a signal.

    Returns
    -------
    np.ndarray
        Shape (n_scales, len(sig)); row 0 is the highest band
    """
    sig = np.asarray(sig, dtype=float)
    bands = np.zeros((n_scales, len(sig)))
    for i, centre in enumerate(_octave_centres(fs, n_scales)):
        kernel = _wavelet_kernel(fs, centre)
        if len(kernel) > len(sig):
            continue
        bands[i] = scipy_signal.fftconvolve(sig, kernel, mode='same')
    return bands


def maxima_dispersion_quotient(
    residual: np.ndarray,
    fs: int,
    gci_times: np.ndarray,
    n_scales: int = 6,
    max_period: float = 0.02
) -> EventSequence:
    """
    Maxima dispersion quotient (MDQ) at each GCI.

    For every GCI the maximum of each wavelet band of the LP residual is
    located within half a local period; MDQ is the mean distance of these
    maxima to the GCI, normalised by the local period.

    Parameters
    ----------
    residual : np.ndarray
        LP residual
    fs : int
        Sample rate
    gci_times : np.ndarray
        Glottal closure instants (s)

    Returns
    -------
    EventSequence
        MDQ values timed at the GCIs
    """
    residual = np.asarray(residual, dtype=float)
    gci = np.round(np.asarray(gci_times, dtype=float) * fs).astype(int)
    gci = gci[(gci >= 0) & (gci < len(residual))]
    if len(gci) < 2:
        return EventSequence.empty(name='MDQ')

    bands = np.abs(wavelet_decomposition(residual, fs, n_scales))
    periods = np.diff(gci)
    periods = np.append(periods, periods[-1])

    times, values = [], []
    for g, period in zip(gci, periods):
        if period > max_period * fs:
            period = int(round(0.01 * fs))
        half = max(1, period // 2)
        lo, hi = max(0, g - half), min(len(residual), g + half)
        if hi - lo < 2:
            continue
        distances = [abs(lo + int(np.argmax(band[lo:hi])) - g) for band in bands]
        values.append(np.mean(distances) / period)
        times.append(g / fs)

    return EventSequence(values, times, name='MDQ')


def peak_slope(
    sig: np.ndarray,
    fs: int,
    frame_len: float = 0.04,
    frame_shift: float = 0.01,
    n_scales: int = 6
) -> EventSequence:
    """
    Peak slope: regression slope of log10 wavelet peak amplitudes over octave bands.

    Parameters
    ----------
    sig : np.ndarray
        Speech signal
    fs : int
        Sample rate
    frame_len : float
        Analysis frame length (s)
    frame_shift : float
        Frame shift (s)

    Returns
    -------
    EventSequence
        One slope per frame, timed at the frame centre
    """
    sig = np.asarray(sig, dtype=float)
    bands = np.abs(wavelet_decomposition(sig, fs, n_scales))
    win = int(round(frame_len * fs))
    hop = max(1, int(round(frame_shift * fs)))
    if len(sig) < win:
        return EventSequence.empty(name='peakSlope')

    octaves = np.arange(n_scales, dtype=float)
    times, values = [], []
    for start in range(0, len(sig) - win + 1, hop):
        peaks = np.max(bands[:, start:start + win], axis=1)
        if np.max(peaks) < EPS:
            values.append(0.0)
        else:
            slope = stats.linregress(octaves, np.log10(peaks + EPS)).slope
            values.append(float(slope))
        times.append((start + win / 2) / fs)

    return EventSequence(values, times, name='peakSlope')
