"""
Glottal and Spectral Feature Extraction.

Converts a directory of speech recordings into one uniformly sampled feature
matrix per file: pitch and voicing, glottal source parameters, wavelet
voice quality measures, the LF-model shape parameter Rd, creaky voice
probability and spectral envelope cepstra.

Features (36 per frame, every 10 ms by default):
- F0, VUV
- NAQ, QOQ, H1H2, PSP
- MDQ, peakSlope
- Rd, Rd_conf
- creak_prob
- MFCC_0 .. MFCC_24

Usage:
    from covarep_features import extract_file_features, process_directory

    # Single file
    matrix = extract_file_features('path/to/audio.wav')
    df = matrix.to_dataframe()

    # Batch processing (writes <name>.mat next to each wav file)
    summary = process_directory('path/to/wavs', sample_interval=0.01)
"""

__version__ = "1.0.0"

# Main extraction functions
from .main_extractor import (
    process_directory,
    analyse_file,
    get_all_feature_names,
    print_feature_descriptions
)
from .config import ExtractionConfig

# Pipeline and alignment
from .pipeline import (
    FileContext,
    NoVoicedSpeechError,
    StageError,
    STAGE_FALLBACKS,
    run_pipeline,
    analyse_waveform,
    extract_file_features
)
from .alignment import (
    FEATURE_NAMES,
    EventSequence,
    FeatureMatrix,
    target_grid,
    resample_sequence,
    assemble_feature_matrix
)
from .toolkit import AnalysisToolkit

# Utilities
from .utils import (
    load_audio,
    save_feature_matrix,
    load_feature_matrix,
    validate_feature_matrix,
    generate_qc_report
)

__all__ = [
    # Main functions
    'process_directory',
    'analyse_file',
    'ExtractionConfig',
    'get_all_feature_names',
    'print_feature_descriptions',

    # Pipeline
    'FileContext',
    'NoVoicedSpeechError',
    'StageError',
    'STAGE_FALLBACKS',
    'run_pipeline',
    'analyse_waveform',
    'extract_file_features',
    'AnalysisToolkit',

    # Alignment
    'FEATURE_NAMES',
    'EventSequence',
    'FeatureMatrix',
    'target_grid',
    'resample_sequence',
    'assemble_feature_matrix',

    # Utilities
    'load_audio',
    'save_feature_matrix',
    'load_feature_matrix',
    'validate_feature_matrix',
    'generate_qc_report',
]
