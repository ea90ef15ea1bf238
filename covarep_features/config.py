"""
Extraction configuration.
"""

import logging
from dataclasses import dataclass, fields
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ('mat', 'csv')
F0_METHODS = ('pyin', 'parselmouth')


@dataclass
class ExtractionConfig:
    """Configuration for glottal and spectral feature extraction."""
    # Feature sampling interval in seconds
    sample_interval: float = 0.01

    # Pitch parameters
    f0_min: float = 50.0
    f0_max: float = 500.0
    f0_method: str = 'pyin'
    unvoiced_f0: float = 100.0  # F0 assumed for unvoiced frames in harmonic analysis

    # Source-filter decomposition
    iaif_leakage: float = 0.99
    iaif_hp_filter: bool = True
    lp_win_len: float = 0.025  # 25ms
    lp_win_shift: float = 0.005  # 5ms

    # Harmonic analysis
    dft_len: int = 4096

    # Degenerate input: fail the file instead of zero-filling glottal columns
    strict_voicing: bool = False

    # Output
    output_format: str = 'mat'
    output_dir: Optional[str] = None

    # Processing options
    skip_on_error: bool = True
    n_jobs: int = 1
    file_timeout: Optional[float] = None
    verbose: bool = True

    def __post_init__(self):
        if self.sample_interval <= 0:
            raise ValueError(f"sample_interval must be positive, got {self.sample_interval}")
        if not 0 < self.f0_min < self.f0_max:
            raise ValueError(f"Invalid F0 range: [{self.f0_min}, {self.f0_max}]")
        if not 0 < self.iaif_leakage <= 1:
            raise ValueError(f"iaif_leakage must be in (0, 1], got {self.iaif_leakage}")
        if self.unvoiced_f0 <= 0:
            raise ValueError(f"unvoiced_f0 must be positive, got {self.unvoiced_f0}")
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Unknown output format: {self.output_format}")
        if self.f0_method not in F0_METHODS:
            raise ValueError(f"Unknown F0 method: {self.f0_method}")
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be at least 1, got {self.n_jobs}")
        if self.file_timeout is not None and self.file_timeout <= 0:
            raise ValueError(f"file_timeout must be positive, got {self.file_timeout}")

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'ExtractionConfig':
        """Load configuration from YAML file."""
        with open(yaml_path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}
        if not isinstance(config_dict, dict):
            raise ValueError(f"Config file must hold a mapping of sections: {yaml_path}")

        defaults = cls()
        features = config_dict.get('features') or {}
        pitch = config_dict.get('pitch') or {}
        source = config_dict.get('source') or {}
        spectral = config_dict.get('spectral') or {}
        processing = config_dict.get('processing') or {}
        output = config_dict.get('output') or {}

        return cls(
            sample_interval=features.get('sample_interval', defaults.sample_interval),
            f0_min=pitch.get('f0_min', defaults.f0_min),
            f0_max=pitch.get('f0_max', defaults.f0_max),
            f0_method=pitch.get('method', defaults.f0_method),
            unvoiced_f0=pitch.get('unvoiced_f0', defaults.unvoiced_f0),
            iaif_leakage=source.get('leakage', defaults.iaif_leakage),
            iaif_hp_filter=source.get('hp_filter', defaults.iaif_hp_filter),
            lp_win_len=source.get('lp_win_len', defaults.lp_win_len),
            lp_win_shift=source.get('lp_win_shift', defaults.lp_win_shift),
            dft_len=spectral.get('dft_len', defaults.dft_len),
            strict_voicing=processing.get('strict_voicing', defaults.strict_voicing),
            skip_on_error=processing.get('skip_on_error', defaults.skip_on_error),
            n_jobs=processing.get('n_jobs', defaults.n_jobs),
            file_timeout=processing.get('file_timeout', defaults.file_timeout),
            verbose=processing.get('verbose', defaults.verbose),
            output_format=output.get('format', defaults.output_format),
            output_dir=output.get('dir', defaults.output_dir),
        )

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}
