"""
Shared fixtures: synthetic waveforms and a deterministic stand-in toolkit.

The stand-in collaborators honour the same contracts as the reference DSP
implementations but are cheap and fully predictable, so pipeline tests can
check alignment and failure handling without depending on signal processing
details.
"""

import sys
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from covarep_features.alignment import EventSequence
from covarep_features.glottal_parameters import GlottalParameters
from covarep_features.source_analysis import PitchTrack
from covarep_features.spectral_features import AnalysisFrame
from covarep_features.toolkit import AnalysisToolkit


# ============== Stand-in collaborators ==============

def fake_polarity(sig, fs):
    return 1 if np.sum(sig ** 3) >= 0 else -1


def fake_pitch(sig, fs, f0_min, f0_max, frame_shift_ms):
    hop = int(round(fs * frame_shift_ms / 1000.0))
    n_frames = len(sig) // hop
    times = (np.arange(n_frames) * hop + hop / 2) / fs
    energy = np.array([np.mean(sig[i * hop:(i + 1) * hop] ** 2) for i in range(n_frames)])
    vuv = (energy > 1e-4).astype(float)
    f0 = np.where(vuv == 1, 120.0, 0.0)
    return PitchTrack(times, f0, vuv)


def fake_gci(sig, fs, f0, use_residual):
    return np.arange(0.005, len(sig) / fs, 1.0 / f0)


def fake_inverse_filter(sig, fs, gci_times, vt_order, gl_order, leakage, hp_filter):
    return sig.copy(), np.diff(sig, prepend=0.0)


def fake_lp_residual(sig, win_len, shift, order):
    return np.diff(sig, prepend=0.0)


def fake_glottal_parameters(flow, derivative, fs, gci_times):
    times = np.asarray(gci_times)[:-1]
    n = len(times)
    return GlottalParameters(
        naq=EventSequence(np.full(n, 0.1), times, name='NAQ'),
        qoq=EventSequence(np.full(n, 0.4), times, name='QOQ'),
        h1h2=EventSequence(np.full(n, 5.0), times, name='H1H2'),
        hrf=EventSequence(np.full(n, -10.0), times, name='HRF'),
        psp=EventSequence(np.full(n, 0.2), times, name='PSP'),
    )


def fake_dispersion(residual, fs, gci_times):
    return EventSequence(np.full(len(gci_times), 0.15), gci_times, name='MDQ')


def fake_peak_slope(sig, fs):
    times = np.arange(0.02, len(sig) / fs - 0.02, 0.01)
    return EventSequence(np.full(len(times), -0.25), times, name='peakSlope')


def fake_harmonic_frames(sig, fs, f0s, options):
    frames = []
    for t, f0 in f0s:
        centre = int(round(t * fs))
        level = np.sqrt(np.mean(sig[max(0, centre - 80):centre + 80] ** 2))
        spectrum = np.full(options.dft_len // 2 + 1, 1.0 + level, dtype=complex)
        frames.append(AnalysisFrame(
            time=float(t),
            f0=float(f0),
            harmonics=np.array([[f0, 1.0, 0.0]]),
            spectrum=spectrum
        ))
    return frames


def fake_rd(frames, fs):
    times = [frame.time for frame in frames]
    values = np.column_stack([np.full(len(frames), 1.2), np.full(len(frames), 0.8)])
    return EventSequence(values, times, name='Rd')


def fake_creak(sig, fs):
    times = np.arange(0.032, len(sig) / fs - 0.032, 0.01)
    return EventSequence(np.full(len(times), 0.05), times, name='creak_prob')


def fake_envelope(spectrum, order):
    return np.abs(spectrum)


def fake_cepstrum(envelope, fs, order):
    return np.log(np.mean(envelope)) + 0.01 * np.arange(order + 1)


def failing_collaborator(*args, **kwargs):
    raise RuntimeError("collaborator exploded")


FAKE_TOOLKIT = AnalysisToolkit(
    polarity=fake_polarity,
    pitch=fake_pitch,
    gci=fake_gci,
    inverse_filter=fake_inverse_filter,
    lp_residual=fake_lp_residual,
    glottal_parameters=fake_glottal_parameters,
    dispersion=fake_dispersion,
    peak_slope=fake_peak_slope,
    harmonic_frames=fake_harmonic_frames,
    rd=fake_rd,
    creak=fake_creak,
    envelope=fake_envelope,
    cepstrum=fake_cepstrum,
)


# ============== Fixtures ==============

@pytest.fixture
def sample_rate():
    """Standard sample rate for tests."""
    return 16000


@pytest.fixture
def voiced_signal(sample_rate):
    """
    One second of a skewed 120 Hz pulse train.

    The waveform is asymmetric so that its polarity is detectable.
    """
    t = np.arange(sample_rate) / sample_rate
    pulses = np.maximum(np.sin(2 * np.pi * 120 * t), 0) ** 4
    sig = 0.5 * (pulses - np.mean(pulses))
    np.random.seed(42)
    return sig + 0.001 * np.random.randn(len(sig))


@pytest.fixture
def silent_signal(sample_rate):
    """One second of digital silence."""
    return np.zeros(sample_rate)


@pytest.fixture
def fake_toolkit():
    return FAKE_TOOLKIT


@pytest.fixture
def failing_creak_toolkit():
    return replace(FAKE_TOOLKIT, creak=failing_collaborator)
