"""
Tests for the directory driver, configuration, persistence and CLI.

Run with: pytest tests/test_extractor.py -v
"""

import logging
import multiprocessing as mp
import time
from dataclasses import replace

import pytest
import numpy as np
import soundfile as sf
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from covarep_features.alignment import FEATURE_NAMES
from covarep_features.config import ExtractionConfig
from covarep_features.main_extractor import (
    SUMMARY_COLUMNS,
    analyse_file,
    get_all_feature_names,
    main,
    process_directory,
)
from covarep_features.utils.feature_io import load_feature_matrix, output_path_for
from covarep_features.utils.validation import generate_qc_report


def slow_pitch(*args, **kwargs):
    time.sleep(30)


# ============== Fixtures ==============

@pytest.fixture
def wav_dir(tmp_path, voiced_signal, silent_signal, sample_rate):
    """Directory with two valid recordings and one corrupted file."""
    sf.write(str(tmp_path / 'a_voiced.wav'), voiced_signal, sample_rate)
    (tmp_path / 'b_corrupted.wav').write_bytes(b'this is not a wav file')
    sf.write(str(tmp_path / 'c_silent.wav'), silent_signal, sample_rate)
    return tmp_path


@pytest.fixture
def corrupted_dir(tmp_path):
    for name in ('x.wav', 'y.wav'):
        (tmp_path / name).write_bytes(b'RIFF garbage')
    return tmp_path


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "features:\n"
        "  sample_interval: 0.02\n"
        "pitch:\n"
        "  f0_min: 60\n"
        "  f0_max: 400\n"
        "  method: parselmouth\n"
        "source:\n"
        "  leakage: 0.98\n"
        "processing:\n"
        "  skip_on_error: false\n"
        "output:\n"
        "  format: csv\n"
    )
    return path


# ============== Driver Tests ==============

class TestProcessDirectory:
    """Tests for corpus-level processing."""

    def test_empty_directory(self, tmp_path, fake_toolkit, caplog):
        with caplog.at_level(logging.WARNING):
            df = process_directory(str(tmp_path), toolkit=fake_toolkit)

        assert len(df) == 0
        assert list(df.columns) == SUMMARY_COLUMNS
        assert "No wav files in input directory" in caplog.text

    def test_missing_directory(self, tmp_path, fake_toolkit):
        with pytest.raises(NotADirectoryError):
            process_directory(str(tmp_path / 'missing'), toolkit=fake_toolkit)

    def test_corrupted_file_isolated(self, wav_dir, fake_toolkit):
        df = process_directory(str(wav_dir), toolkit=fake_toolkit)

        assert list(df['file']) == ['a_voiced.wav', 'b_corrupted.wav', 'c_silent.wav']
        assert list(df['status']) == ['done', 'failed', 'done']
        assert df.loc[1, 'error']
        assert (wav_dir / 'a_voiced.mat').exists()
        assert (wav_dir / 'c_silent.mat').exists()
        assert not (wav_dir / 'b_corrupted.mat').exists()

    def test_failure_reason_names_exception(self, wav_dir, fake_toolkit):
        """Decoder errors without a message still explain the failure."""
        df = process_directory(str(wav_dir), toolkit=fake_toolkit)
        error_type, _, _ = df.loc[1, 'error'].partition(':')

        assert error_type.isidentifier()
        assert error_type.endswith(('Error', 'Exception'))

    def test_summary_flags(self, wav_dir, fake_toolkit):
        df = process_directory(str(wav_dir), toolkit=fake_toolkit)

        assert df.loc[0, 'voiced'] == True  # noqa: E712
        assert df.loc[2, 'voiced'] == False  # noqa: E712
        assert df.loc[0, 'n_frames'] == 100
        assert df.loc[0, 'duration_seconds'] == pytest.approx(1.0)

    def test_creak_fallback_reported(self, wav_dir, failing_creak_toolkit):
        df = process_directory(str(wav_dir), toolkit=failing_creak_toolkit)
        done = df[df['status'] == 'done']

        assert done['creak_fallback'].all()

    def test_abort_when_not_skipping(self, wav_dir, fake_toolkit):
        config = ExtractionConfig(skip_on_error=False)

        with pytest.raises(Exception):
            process_directory(str(wav_dir), config=config, toolkit=fake_toolkit)

    def test_sample_interval_override(self, wav_dir, fake_toolkit):
        df = process_directory(str(wav_dir), sample_interval=0.02, toolkit=fake_toolkit)

        assert df.loc[0, 'n_frames'] == 50

    def test_output_dir_and_csv(self, wav_dir, tmp_path_factory, fake_toolkit):
        out_dir = tmp_path_factory.mktemp('features')
        config = ExtractionConfig(output_format='csv', output_dir=str(out_dir))
        df = process_directory(str(wav_dir), config=config, toolkit=fake_toolkit)

        assert (out_dir / 'a_voiced.csv').exists()
        assert df.loc[0, 'output_path'] == str(out_dir / 'a_voiced.csv')

    def test_parallel_keeps_order(self, corrupted_dir):
        config = ExtractionConfig(n_jobs=2)
        df = process_directory(str(corrupted_dir), config=config)

        assert list(df['file']) == ['x.wav', 'y.wav']
        assert list(df['status']) == ['failed', 'failed']

    def test_parallel_extraction(self, wav_dir, fake_toolkit):
        config = ExtractionConfig(n_jobs=2)
        df = process_directory(str(wav_dir), config=config, toolkit=fake_toolkit)

        assert list(df['file']) == ['a_voiced.wav', 'b_corrupted.wav', 'c_silent.wav']
        assert list(df['status']) == ['done', 'failed', 'done']
        assert df.loc[0, 'n_frames'] == 100
        assert (wav_dir / 'a_voiced.mat').exists()
        assert (wav_dir / 'c_silent.mat').exists()

    def test_parallel_timeout_stops_workers(self, wav_dir, fake_toolkit):
        """A hung file is reported as failed and its worker does not outlive the run."""
        toolkit = replace(fake_toolkit, pitch=slow_pitch)
        config = ExtractionConfig(n_jobs=2, file_timeout=1.0)

        start = time.monotonic()
        df = process_directory(str(wav_dir), config=config, toolkit=toolkit)
        elapsed = time.monotonic() - start

        assert elapsed < 15
        assert list(df['status']) == ['failed', 'failed', 'failed']
        assert 'timed out' in df.loc[0, 'error']
        assert 'timed out' in df.loc[2, 'error']
        assert mp.active_children() == []


class TestPersistence:
    """Tests for the written feature files."""

    def test_mat_round_trip(self, wav_dir, fake_toolkit):
        row = analyse_file(wav_dir / 'a_voiced.wav', ExtractionConfig(), fake_toolkit)
        matrix = load_feature_matrix(row['output_path'])

        assert matrix.names == FEATURE_NAMES
        assert matrix.features.shape == (100, 36)
        assert not np.isnan(matrix.features).any()

    def test_csv_round_trip(self, wav_dir, fake_toolkit):
        config = ExtractionConfig(output_format='csv')
        row = analyse_file(wav_dir / 'a_voiced.wav', config, fake_toolkit)
        matrix = load_feature_matrix(row['output_path'])

        assert matrix.names == FEATURE_NAMES
        assert matrix.features.shape == (100, 36)

    def test_output_path_for(self, tmp_path):
        assert output_path_for('/data/spk1.wav') == Path('/data/spk1.mat')
        assert output_path_for('/data/spk1.wav', tmp_path, 'csv') == tmp_path / 'spk1.csv'


class TestQCReport:
    """Tests for the corpus QC report."""

    def test_report(self, wav_dir, fake_toolkit, tmp_path):
        df = process_directory(str(wav_dir), toolkit=fake_toolkit)
        report_path = tmp_path / 'qc.txt'
        report = generate_qc_report(df, str(report_path))

        assert report['summary']['total_files'] == 3
        assert report['summary']['no_voiced_speech'] == 1
        assert report['failures'][0]['file'] == 'b_corrupted.wav'
        assert report['frame_stats']['total'] == 200
        assert 'FAILURES' in report_path.read_text()

    def test_report_empty(self, tmp_path, fake_toolkit):
        df = process_directory(str(tmp_path), toolkit=fake_toolkit)
        report = generate_qc_report(df)

        assert report['summary']['total_files'] == 0


# ============== Configuration Tests ==============

class TestConfig:
    """Tests for extraction configuration."""

    def test_defaults(self):
        config = ExtractionConfig()

        assert config.sample_interval == 0.01
        assert (config.f0_min, config.f0_max) == (50.0, 500.0)
        assert config.iaif_leakage == 0.99
        assert config.output_format == 'mat'

    def test_from_yaml(self, config_file):
        config = ExtractionConfig.from_yaml(str(config_file))

        assert config.sample_interval == 0.02
        assert config.f0_min == 60
        assert config.f0_method == 'parselmouth'
        assert config.iaif_leakage == 0.98
        assert config.skip_on_error is False
        assert config.output_format == 'csv'
        # Unset keys keep their defaults
        assert config.dft_len == 4096

    def test_from_yaml_empty_sections(self, tmp_path):
        path = tmp_path / 'sparse.yaml'
        path.write_text("features:\npitch:\n  f0_min: 70\nprocessing:\n")
        config = ExtractionConfig.from_yaml(str(path))

        assert config.sample_interval == 0.01
        assert config.f0_min == 70
        assert config.skip_on_error is True

    def test_from_yaml_not_a_mapping(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text("- features\n- pitch\n")

        with pytest.raises(ValueError):
            ExtractionConfig.from_yaml(str(path))

    @pytest.mark.parametrize('kwargs', [
        {'sample_interval': 0},
        {'f0_min': 500, 'f0_max': 50},
        {'iaif_leakage': 1.5},
        {'output_format': 'xlsx'},
        {'f0_method': 'crepe'},
        {'n_jobs': 0},
        {'file_timeout': 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ExtractionConfig(**kwargs)


# ============== CLI Tests ==============

class TestCLI:
    """Tests for the command-line entry point and its exit codes."""

    def test_empty_directory_succeeds(self, tmp_path):
        assert main([str(tmp_path)]) == 0

    def test_missing_directory(self, tmp_path):
        assert main([str(tmp_path / 'missing')]) == 2

    def test_failed_file_exit_code(self, corrupted_dir):
        assert main([str(corrupted_dir)]) == 1

    def test_invalid_sample_rate(self, tmp_path):
        assert main([str(tmp_path), '--sample-rate', '0']) == 2

    def test_unparseable_argument(self, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main([str(tmp_path), '--sample-rate', 'fast'])
        assert excinfo.value.code == 2

    def test_missing_input_argument(self):
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 2

    def test_config_file(self, tmp_path, config_file):
        assert main([str(tmp_path), '--config', str(config_file)]) == 0

    def test_missing_config_file(self, tmp_path):
        assert main([str(tmp_path), '--config', str(tmp_path / 'nope.yaml')]) == 2

    def test_config_with_empty_section(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("features:\noutput:\n  format: csv\n")

        assert main([str(tmp_path), '--config', str(path)]) == 0

    def test_config_not_a_mapping(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("just a string\n")

        assert main([str(tmp_path), '--config', str(path)]) == 2

    def test_qc_report(self, corrupted_dir, tmp_path_factory):
        report_path = tmp_path_factory.mktemp('qc') / 'report.txt'

        assert main([str(corrupted_dir), '--qc-report', str(report_path)]) == 1
        assert report_path.exists()

    def test_list_features(self, capsys):
        assert main(['--list-features']) == 0

        out = capsys.readouterr().out
        assert 'creak_prob' in out
        assert 'MFCC_0' in out

    def test_feature_names(self):
        assert get_all_feature_names() == list(FEATURE_NAMES)
