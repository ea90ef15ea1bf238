"""
Per-file multi-stage analysis pipeline.

Stages, in order:
1. Polarity correction
2. Pitch/voicing tracking, resampled F0/VUV and a sample-resolution voicing mask
3. Voiced median F0 and GCI detection (voiced, de-duplicated GCIs)
4. Source-filter decomposition (IAIF flow/derivative, LP residual)
5. Glottal parameters (NAQ, QOQ, H1H2, HRF, PSP) and wavelet measures (MDQ, peakSlope)
6. Pitch-synchronous harmonic frames and Rd
7. Creak probability (fault-isolated)
8. Per-frame spectral envelope and cepstral coefficients
9. Grid unification and assembly

All intermediate signals live on a ``FileContext`` that is created per file
and dropped once the feature matrix is assembled.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import numpy as np

from .alignment import (
    FEATURE_NAMES,
    MFCC_ORDER,
    ROUNDED_TIME_AXIS,
    SPREAD_AXIS,
    TIME_AXIS,
    EventSequence,
    FeatureMatrix,
    assemble_feature_matrix,
    binarize_voicing,
    interp_nan,
    mfcc_column_names,
    resample_sequence,
    round_half_up,
    target_grid,
)
from .config import ExtractionConfig
from .glottal_parameters import GlottalParameters
from .source_analysis import PitchTrack, clean_gcis
from .spectral_features import AnalysisFrame, HarmonicAnalysisOptions, frame_cepstra
from .toolkit import AnalysisToolkit
from .utils.audio_loader import correct_polarity, load_audio

logger = logging.getLogger(__name__)


class NoVoicedSpeechError(ValueError):
    """No pitch frame is voiced within the F0 search range."""


class StageError(RuntimeError):
    """A sub-analysis failed; the file cannot be completed."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} stage failed: {type(cause).__name__}: {cause}")


def _zero_column(ctx: 'FileContext') -> np.ndarray:
    return np.zeros(len(ctx.grid))


# Stages with a neutral substitute on failure. Every other stage is fatal to the file.
STAGE_FALLBACKS: Dict[str, Callable[['FileContext'], np.ndarray]] = {
    'creak': _zero_column,
}


@dataclass
class FileContext:
    """Everything computed for one waveform."""
    signal: np.ndarray
    fs: int
    config: ExtractionConfig
    name: str = ''

    grid: np.ndarray = field(init=False)
    polarity: int = 1
    pitch: Optional[PitchTrack] = None
    f0_median: Optional[float] = None
    voicing_mask: Optional[np.ndarray] = None
    gci: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    glottal_flow: Optional[np.ndarray] = None
    glottal_derivative: Optional[np.ndarray] = None
    lp_residual: Optional[np.ndarray] = None
    glottal: Optional[GlottalParameters] = None
    frames: List[AnalysisFrame] = field(default_factory=list)
    sequences: Dict[str, EventSequence] = field(default_factory=dict)
    columns: Dict[str, np.ndarray] = field(default_factory=dict)
    stage_status: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.signal = np.asarray(self.signal, dtype=float)
        if self.signal.ndim != 1:
            raise ValueError(f"Expected a single-channel waveform, got shape {self.signal.shape}")
        if len(self.signal) == 0:
            raise ValueError("Empty waveform")
        self.grid = target_grid(len(self.signal), self.fs, self.config.sample_interval)

    @property
    def n_samples(self) -> int:
        return len(self.signal)

    @property
    def gci_times(self) -> np.ndarray:
        return self.gci / self.fs

    def resample(self, sequence: EventSequence, axis=TIME_AXIS) -> np.ndarray:
        return resample_sequence(sequence, self.grid, self.fs, self.n_samples, axis)

    def set_column(self, name: str, values: np.ndarray):
        self.columns[name] = np.ravel(values)


def run_stage(ctx: FileContext, stage: str, func: Callable, *args, **kwargs):
    """
    Run one sub-analysis under the stage failure policy.

    Stages listed in ``STAGE_FALLBACKS`` return their fallback on any
    exception; all others raise ``StageError``.
    """
    try:
        result = func(*args, **kwargs)
    except Exception as e:
        fallback = STAGE_FALLBACKS.get(stage)
        if fallback is None:
            ctx.stage_status[stage] = 'failed'
            raise StageError(stage, e) from e
        logger.warning(f"{ctx.name or 'waveform'}: {stage} failed ({e}), using fallback")
        ctx.stage_status[stage] = 'fallback'
        return fallback(ctx)

    ctx.stage_status[stage] = 'ok'
    return result


def voiced_median_f0(pitch: PitchTrack, f0_min: float, f0_max: float) -> float:
    """
    Median F0 of voiced frames strictly inside the search range.

    Raises
    ------
    NoVoicedSpeechError
        If no frame qualifies
    """
    voiced = (pitch.f0 > f0_min) & (pitch.f0 < f0_max) & (pitch.vuv == 1)
    if not np.any(voiced):
        raise NoVoicedSpeechError("No voiced speech detected")
    return float(np.median(pitch.f0[voiced]))


def inverse_filter_orders(fs: int):
    """Glottal and vocal tract LP orders for IAIF."""
    gl_order = int(2 * round_half_up(fs / 4000))
    vt_order = int(2 * round_half_up(fs / 2000) + 4)
    return gl_order, vt_order


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def _correct_polarity(ctx: FileContext, toolkit: AnalysisToolkit):
    ctx.polarity = int(run_stage(ctx, 'polarity', toolkit.polarity, ctx.signal, ctx.fs))
    ctx.signal = correct_polarity(ctx.signal, ctx.polarity)


def _track_pitch(ctx: FileContext, toolkit: AnalysisToolkit):
    config = ctx.config
    pitch = run_stage(
        ctx, 'pitch', toolkit.pitch,
        ctx.signal, ctx.fs, config.f0_min, config.f0_max, config.sample_interval * 1000
    )
    if not isinstance(pitch, PitchTrack):
        pitch = PitchTrack(*pitch)
    ctx.pitch = pitch

    track = EventSequence(np.column_stack([pitch.f0, pitch.vuv]), pitch.times, name='pitch')
    resampled = ctx.resample(track, ROUNDED_TIME_AXIS)
    ctx.set_column('F0', resampled[:, 0])
    ctx.set_column('VUV', binarize_voicing(resampled[:, 1]))

    positions = round_half_up(pitch.times * ctx.fs)
    ctx.voicing_mask = interp_nan(positions, pitch.vuv, np.arange(1, ctx.n_samples + 1))


def _locate_gcis(ctx: FileContext, toolkit: AnalysisToolkit) -> bool:
    """GCI detection; returns False when the input has no voiced speech."""
    config = ctx.config
    try:
        ctx.f0_median = voiced_median_f0(ctx.pitch, config.f0_min, config.f0_max)
    except NoVoicedSpeechError:
        if config.strict_voicing:
            raise
        logger.warning(f"{ctx.name or 'waveform'}: no voiced speech detected, glottal features set to 0")
        ctx.stage_status['gci'] = 'skipped'
        return False

    candidates = run_stage(ctx, 'gci', toolkit.gci, ctx.signal, ctx.fs, ctx.f0_median, True)
    ctx.gci = clean_gcis(candidates, ctx.fs, ctx.voicing_mask)
    return True


def _decompose(ctx: FileContext, toolkit: AnalysisToolkit):
    config = ctx.config
    fs = ctx.fs
    gl_order, vt_order = inverse_filter_orders(fs)

    ctx.glottal_flow, ctx.glottal_derivative = run_stage(
        ctx, 'inverse_filter', toolkit.inverse_filter,
        ctx.signal, fs, ctx.gci_times, vt_order, gl_order,
        config.iaif_leakage, config.iaif_hp_filter
    )
    ctx.lp_residual = run_stage(
        ctx, 'lp_residual', toolkit.lp_residual,
        ctx.signal, config.lp_win_len * fs, config.lp_win_shift * fs, fs / 1000 + 2
    )


def _parameterise_glottal_source(ctx: FileContext, toolkit: AnalysisToolkit, voiced: bool):
    if voiced:
        ctx.glottal = run_stage(
            ctx, 'glottal_parameters', toolkit.glottal_parameters,
            ctx.glottal_flow, ctx.glottal_derivative, ctx.fs, ctx.gci_times
        )
        mdq = run_stage(ctx, 'dispersion', toolkit.dispersion, ctx.lp_residual, ctx.fs, ctx.gci_times)
    else:
        ctx.glottal = GlottalParameters(*(EventSequence.empty(name=n) for n in ('NAQ', 'QOQ', 'H1H2', 'HRF', 'PSP')))
        mdq = EventSequence.empty(name='MDQ')
        for stage in ('inverse_filter', 'lp_residual', 'glottal_parameters', 'dispersion'):
            ctx.stage_status[stage] = 'skipped'

    for name, sequence in zip(('NAQ', 'QOQ', 'H1H2', 'HRF', 'PSP'), ctx.glottal):
        ctx.sequences[name] = sequence
    ctx.sequences['MDQ'] = mdq
    ctx.sequences['peakSlope'] = run_stage(ctx, 'peak_slope', toolkit.peak_slope, ctx.signal, ctx.fs)

    # HRF stays on the context only
    for name in ('NAQ', 'QOQ', 'H1H2', 'PSP', 'MDQ', 'peakSlope'):
        ctx.set_column(name, ctx.resample(ctx.sequences[name]))


def _estimate_rd(ctx: FileContext, toolkit: AnalysisToolkit):
    f0 = ctx.pitch.f0.copy()
    f0[f0 == 0] = ctx.config.unvoiced_f0
    f0s = np.column_stack([ctx.pitch.times, f0])

    options = HarmonicAnalysisOptions(dft_len=ctx.config.dft_len, peak_picking=True, keep_spectrum=True)
    ctx.frames = run_stage(ctx, 'harmonic_frames', toolkit.harmonic_frames, ctx.signal, ctx.fs, f0s, options)

    rds = run_stage(ctx, 'rd', toolkit.rd, ctx.frames, ctx.fs)
    ctx.sequences['Rd'] = rds
    resampled = ctx.resample(rds)
    ctx.set_column('Rd', resampled[:, 0])
    ctx.set_column('Rd_conf', resampled[:, 1])


def _creak_column(ctx: FileContext, toolkit: AnalysisToolkit) -> np.ndarray:
    creak = toolkit.creak(ctx.signal, ctx.fs)
    ctx.sequences['creak_prob'] = creak
    return ctx.resample(creak)[:, 0]


def _detect_creak(ctx: FileContext, toolkit: AnalysisToolkit):
    ctx.set_column('creak_prob', run_stage(ctx, 'creak', _creak_column, ctx, toolkit))


def _extract_cepstra(ctx: FileContext, toolkit: AnalysisToolkit):
    coefficients = run_stage(
        ctx, 'cepstrum', frame_cepstra,
        ctx.frames, ctx.fs, MFCC_ORDER,
        envelope_fn=toolkit.envelope, cepstrum_fn=toolkit.cepstrum
    )
    # No time column: frames are spread evenly over the waveform
    mfcc = EventSequence(coefficients.reshape(len(ctx.frames), MFCC_ORDER + 1), name='MFCC')
    ctx.sequences['MFCC'] = mfcc
    resampled = ctx.resample(mfcc, SPREAD_AXIS)
    for k, name in enumerate(mfcc_column_names(MFCC_ORDER)):
        ctx.set_column(name, resampled[:, k])


def run_pipeline(ctx: FileContext, toolkit: Optional[AnalysisToolkit] = None) -> FeatureMatrix:
    """
    Run every stage on a file context and assemble its feature matrix.

    Parameters
    ----------
    ctx : FileContext
        Fresh context holding the waveform
    toolkit : AnalysisToolkit, optional
        Sub-analysis implementations (defaults from ``ctx.config``)

    Returns
    -------
    FeatureMatrix
        ``len(ctx.grid)`` rows, one column per name in ``FEATURE_NAMES``

    Raises
    ------
    StageError
        If any stage without a fallback fails
    NoVoicedSpeechError
        If ``strict_voicing`` is set and no voiced speech is found
    """
    if toolkit is None:
        toolkit = AnalysisToolkit.from_config(ctx.config)

    _correct_polarity(ctx, toolkit)
    _track_pitch(ctx, toolkit)
    voiced = _locate_gcis(ctx, toolkit)
    if voiced:
        _decompose(ctx, toolkit)
    _parameterise_glottal_source(ctx, toolkit, voiced)
    _estimate_rd(ctx, toolkit)
    _detect_creak(ctx, toolkit)
    _extract_cepstra(ctx, toolkit)

    return assemble_feature_matrix(
        ctx.columns,
        FEATURE_NAMES,
        positions=ctx.grid,
        fs=ctx.fs,
        metadata={
            'name': ctx.name,
            'polarity': ctx.polarity,
            'f0_median': ctx.f0_median,
            'n_gci': int(len(ctx.gci)),
            'n_analysis_frames': len(ctx.frames),
            'stage_status': dict(ctx.stage_status),
        }
    )


def analyse_waveform(
    sig: np.ndarray,
    fs: int,
    config: Optional[ExtractionConfig] = None,
    toolkit: Optional[AnalysisToolkit] = None,
    name: str = ''
) -> FeatureMatrix:
    """
    Extract the 36-column feature matrix from an in-memory waveform.

    Parameters
    ----------
    sig : np.ndarray
        Single-channel waveform
    fs : int
        Sample rate
    config : ExtractionConfig, optional
        Extraction configuration (uses defaults if not provided)
    toolkit : AnalysisToolkit, optional
        Sub-analysis implementations

    Returns
    -------
    FeatureMatrix
    """
    if config is None:
        config = ExtractionConfig()
    ctx = FileContext(signal=sig, fs=int(fs), config=config, name=name)
    return run_pipeline(ctx, toolkit)


def extract_file_features(
    audio_path: str,
    config: Optional[ExtractionConfig] = None,
    toolkit: Optional[AnalysisToolkit] = None
) -> FeatureMatrix:
    """Load a WAV file and extract its feature matrix."""
    sig, fs = load_audio(audio_path)
    name = Path(audio_path).stem
    return analyse_waveform(sig, fs, config=config, toolkit=toolkit, name=name)
