"""
Tests for the per-file analysis pipeline.

Tests cover:
- Output shape and column order
- Zero-filling and voicing binarisation
- Creak failure isolation and fatal stage failures
- Determinism and polarity invariance
- Silent input and the strict voicing option

Run with: pytest tests/test_pipeline.py -v
"""

import pytest
import numpy as np
from dataclasses import replace
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from covarep_features.alignment import FEATURE_NAMES
from covarep_features.config import ExtractionConfig
from covarep_features.pipeline import (
    FileContext,
    NoVoicedSpeechError,
    StageError,
    analyse_waveform,
    inverse_filter_orders,
    run_pipeline,
    run_stage,
    voiced_median_f0,
)
from covarep_features.source_analysis import PitchTrack


def raise_error(*args, **kwargs):
    raise RuntimeError("collaborator exploded")


# ============== Assembly Tests ==============

class TestFeatureMatrixShape:
    """Tests for the assembled matrix of a voiced waveform."""

    def test_rows_and_columns(self, voiced_signal, sample_rate, fake_toolkit):
        """1 s at 16 kHz with a 10 ms interval gives 100 rows."""
        matrix = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)

        assert matrix.features.shape == (100, 36)
        assert matrix.names == FEATURE_NAMES

    def test_no_nan(self, voiced_signal, sample_rate, fake_toolkit):
        matrix = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)

        assert not np.isnan(matrix.features).any()

    def test_vuv_binary(self, voiced_signal, sample_rate, fake_toolkit):
        matrix = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)

        assert set(np.unique(matrix.column('VUV'))) <= {0.0, 1.0}
        assert matrix.column('VUV').sum() > 90

    def test_edges_zero_filled(self, voiced_signal, sample_rate, fake_toolkit):
        """Grid points outside a sub-analysis' native domain are 0."""
        matrix = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)

        creak = matrix.column('creak_prob')
        assert creak[0] == 0.0
        assert creak[-1] == 0.0
        assert np.allclose(creak[10:90], 0.05)

    def test_glottal_columns_filled(self, voiced_signal, sample_rate, fake_toolkit):
        matrix = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)

        assert np.allclose(matrix.column('NAQ')[5:95], 0.1)
        assert np.allclose(matrix.column('MDQ')[5:95], 0.15)
        assert np.allclose(matrix.column('Rd')[5:95], 1.2)
        assert np.allclose(matrix.column('F0')[1:99], 120.0)

    def test_matrix_read_only(self, voiced_signal, sample_rate, fake_toolkit):
        matrix = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)

        with pytest.raises(ValueError):
            matrix.features[0, 0] = 1.0

    def test_custom_sample_interval(self, voiced_signal, sample_rate, fake_toolkit):
        config = ExtractionConfig(sample_interval=0.02)
        matrix = analyse_waveform(voiced_signal, sample_rate, config=config, toolkit=fake_toolkit)

        assert matrix.features.shape == (50, 36)

    def test_metadata(self, voiced_signal, sample_rate, fake_toolkit):
        matrix = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit, name='spk1')

        assert matrix.metadata['name'] == 'spk1'
        assert matrix.metadata['f0_median'] == pytest.approx(120.0)
        assert matrix.metadata['n_gci'] > 100
        assert matrix.metadata['stage_status']['creak'] == 'ok'


# ============== Failure Handling Tests ==============

class TestFailureIsolation:
    """Tests for stage failure policy."""

    def test_creak_failure_gives_zero_column(self, voiced_signal, sample_rate, failing_creak_toolkit):
        matrix = analyse_waveform(voiced_signal, sample_rate, toolkit=failing_creak_toolkit)

        creak = matrix.column('creak_prob')
        assert len(creak) == matrix.n_frames
        assert np.all(creak == 0.0)
        assert matrix.metadata['stage_status']['creak'] == 'fallback'

    def test_creak_failure_leaves_other_columns(
        self, voiced_signal, sample_rate, fake_toolkit, failing_creak_toolkit
    ):
        baseline = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)
        degraded = analyse_waveform(voiced_signal, sample_rate, toolkit=failing_creak_toolkit)

        others = [i for i, name in enumerate(FEATURE_NAMES) if name != 'creak_prob']
        np.testing.assert_array_equal(baseline.features[:, others], degraded.features[:, others])

    def test_fatal_stage_raises(self, voiced_signal, sample_rate, fake_toolkit):
        toolkit = replace(fake_toolkit, rd=raise_error)

        with pytest.raises(StageError) as excinfo:
            analyse_waveform(voiced_signal, sample_rate, toolkit=toolkit)

        assert excinfo.value.stage == 'rd'
        assert isinstance(excinfo.value.cause, RuntimeError)

    def test_run_stage_records_status(self, voiced_signal, sample_rate):
        ctx = FileContext(signal=voiced_signal, fs=sample_rate, config=ExtractionConfig())

        assert run_stage(ctx, 'peak_slope', lambda: 3) == 3
        assert ctx.stage_status['peak_slope'] == 'ok'

        with pytest.raises(StageError):
            run_stage(ctx, 'pitch', raise_error)
        assert ctx.stage_status['pitch'] == 'failed'


# ============== Invariance Tests ==============

class TestInvariance:
    """Tests for repeatability and polarity handling."""

    def test_deterministic(self, voiced_signal, sample_rate, fake_toolkit):
        first = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)
        second = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)

        np.testing.assert_array_equal(first.features, second.features)

    def test_polarity_invariance(self, voiced_signal, sample_rate, fake_toolkit):
        positive = analyse_waveform(voiced_signal, sample_rate, toolkit=fake_toolkit)
        negative = analyse_waveform(-voiced_signal, sample_rate, toolkit=fake_toolkit)

        assert positive.metadata['polarity'] == 1
        assert negative.metadata['polarity'] == -1
        np.testing.assert_array_equal(positive.features, negative.features)


# ============== Degenerate Input Tests ==============

class TestDegenerateInput:
    """Tests for inputs without voiced speech."""

    def test_silence(self, silent_signal, sample_rate, fake_toolkit):
        matrix = analyse_waveform(silent_signal, sample_rate, toolkit=fake_toolkit)

        assert matrix.features.shape == (100, 36)
        assert np.all(matrix.column('VUV') == 0.0)
        assert np.all(matrix.column('F0') == 0.0)
        assert len(matrix.column('creak_prob')) == 100
        assert not np.isnan(matrix.features).any()

    def test_silence_skips_glottal_stages(self, silent_signal, sample_rate, fake_toolkit):
        matrix = analyse_waveform(silent_signal, sample_rate, toolkit=fake_toolkit)
        status = matrix.metadata['stage_status']

        assert status['gci'] == 'skipped'
        assert status['glottal_parameters'] == 'skipped'
        assert np.all(matrix.column('NAQ') == 0.0)
        assert np.all(matrix.column('MDQ') == 0.0)

    def test_strict_voicing(self, silent_signal, sample_rate, fake_toolkit):
        config = ExtractionConfig(strict_voicing=True)

        with pytest.raises(NoVoicedSpeechError):
            analyse_waveform(silent_signal, sample_rate, config=config, toolkit=fake_toolkit)

    def test_empty_waveform(self, sample_rate, fake_toolkit):
        with pytest.raises(ValueError):
            analyse_waveform(np.zeros(0), sample_rate, toolkit=fake_toolkit)

    def test_multichannel_rejected(self, sample_rate, fake_toolkit):
        with pytest.raises(ValueError):
            analyse_waveform(np.zeros((2, sample_rate)), sample_rate, toolkit=fake_toolkit)


# ============== Helper Tests ==============

class TestHelpers:
    """Tests for pipeline helpers."""

    def test_voiced_median_f0(self):
        pitch = PitchTrack(
            times=[0.0, 0.01, 0.02, 0.03, 0.04],
            f0=[0.0, 110.0, 600.0, 130.0, 120.0],
            vuv=[0, 1, 1, 1, 0]
        )
        # 600 Hz is outside the search range, 120 Hz is unvoiced
        assert voiced_median_f0(pitch, 50.0, 500.0) == pytest.approx(120.0)

    def test_voiced_median_f0_none_voiced(self):
        pitch = PitchTrack(times=[0.0, 0.01], f0=[0.0, 0.0], vuv=[0, 0])

        with pytest.raises(NoVoicedSpeechError):
            voiced_median_f0(pitch, 50.0, 500.0)

    def test_inverse_filter_orders(self):
        assert inverse_filter_orders(16000) == (8, 20)
        assert inverse_filter_orders(44100) == (22, 48)

    def test_hrf_kept_on_context(self, voiced_signal, sample_rate, fake_toolkit):
        ctx = FileContext(signal=voiced_signal, fs=sample_rate, config=ExtractionConfig())
        matrix = run_pipeline(ctx, fake_toolkit)

        assert 'HRF' in ctx.sequences
        assert len(ctx.sequences['HRF']) > 0
        assert 'HRF' not in matrix.names

    def test_gcis_voiced_and_unique(self, voiced_signal, sample_rate, fake_toolkit):
        ctx = FileContext(signal=voiced_signal, fs=sample_rate, config=ExtractionConfig())
        run_pipeline(ctx, fake_toolkit)

        assert np.all(np.diff(ctx.gci) > 0)
        assert ctx.gci.min() >= 1
        assert ctx.gci.max() <= sample_rate


# ============== Reference Toolkit Tests ==============

class TestReferenceToolkit:
    """End-to-end run with the default collaborators."""

    def test_voiced_waveform(self, voiced_signal, sample_rate):
        matrix = analyse_waveform(voiced_signal, sample_rate)

        assert matrix.features.shape == (100, 36)
        assert not np.isnan(matrix.features).any()
        assert set(np.unique(matrix.column('VUV'))) <= {0.0, 1.0}
        assert np.any(matrix.column('MFCC_0') != 0)

    def test_silence(self, silent_signal, sample_rate):
        matrix = analyse_waveform(silent_signal, sample_rate)

        assert matrix.features.shape == (100, 36)
        assert np.all(matrix.column('VUV') == 0.0)
        assert not np.isnan(matrix.features).any()

    def test_polarity_invariance(self, voiced_signal, sample_rate):
        positive = analyse_waveform(voiced_signal, sample_rate)
        negative = analyse_waveform(-voiced_signal, sample_rate)

        assert positive.metadata['polarity'] == -negative.metadata['polarity']
        np.testing.assert_allclose(positive.features, negative.features, atol=1e-8)
