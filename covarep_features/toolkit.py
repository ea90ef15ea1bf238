"""
Analysis collaborators used by the per-file pipeline.

Each entry is a plain callable with a fixed contract; the defaults are the
reference implementations in this package. Alternative implementations (or
test doubles) are swapped in with ``dataclasses.replace``.

Contracts
---------
polarity(sig, fs) -> +1 | -1
pitch(sig, fs, f0_min, f0_max, frame_shift_ms) -> PitchTrack
gci(sig, fs, reference_f0, use_residual) -> GCI times (s)
inverse_filter(sig, fs, gci_times, vt_order, gl_order, leakage, hp_filter) -> (flow, derivative)
lp_residual(sig, win_len, shift, order) -> residual
glottal_parameters(flow, derivative, fs, gci_times) -> GlottalParameters
dispersion(residual, fs, gci_times) -> EventSequence
peak_slope(sig, fs) -> EventSequence
harmonic_frames(sig, fs, f0s, options) -> List[AnalysisFrame]
rd(frames, fs) -> EventSequence (Rd, confidence)
creak(sig, fs) -> EventSequence
envelope(spectrum, order) -> envelope
cepstrum(envelope, fs, order) -> coefficients
"""

from dataclasses import dataclass
from functools import partial
from typing import Callable

from .creak_features import detect_creaky_voice
from .glottal_parameters import glottal_parameters, maxima_dispersion_quotient, peak_slope
from .source_analysis import detect_gcis, detect_polarity, iaif, lpc_residual, track_pitch
from .spectral_features import envelope_to_mfcc, harmonic_analysis, rd_msp, true_envelope


@dataclass(frozen=True)
class AnalysisToolkit:
    """The thirteen sub-analyses the pipeline depends on."""
    polarity: Callable = detect_polarity
    pitch: Callable = track_pitch
    gci: Callable = detect_gcis
    inverse_filter: Callable = iaif
    lp_residual: Callable = lpc_residual
    glottal_parameters: Callable = glottal_parameters
    dispersion: Callable = maxima_dispersion_quotient
    peak_slope: Callable = peak_slope
    harmonic_frames: Callable = harmonic_analysis
    rd: Callable = rd_msp
    creak: Callable = detect_creaky_voice
    envelope: Callable = true_envelope
    cepstrum: Callable = envelope_to_mfcc

    @classmethod
    def from_config(cls, config) -> 'AnalysisToolkit':
        """Default toolkit with the config's pitch method bound."""
        return cls(pitch=partial(track_pitch, method=config.f0_method))
