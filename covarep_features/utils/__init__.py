# Utils package for glottal feature extraction
from .audio_loader import list_wav_files, load_audio, correct_polarity, get_audio_info
from .feature_io import output_path_for, save_feature_matrix, load_feature_matrix
from .validation import (
    FEATURE_RANGES,
    validate_feature_matrix,
    generate_qc_report
)

__all__ = [
    'list_wav_files',
    'load_audio',
    'correct_polarity',
    'get_audio_info',
    'output_path_for',
    'save_feature_matrix',
    'load_feature_matrix',
    'FEATURE_RANGES',
    'validate_feature_matrix',
    'generate_qc_report'
]
