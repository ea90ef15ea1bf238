"""
Audio loading and polarity utilities.

Handles:
- Listing the WAV files of an input directory
- Loading WAV files at their native sample rate
- Polarity correction of a loaded waveform
"""

import os
import numpy as np
import librosa
import soundfile as sf
from pathlib import Path
from typing import List, Tuple
import logging

logger = logging.getLogger(__name__)


def list_wav_files(in_dir: str) -> List[Path]:
    """
    List the ``*.wav`` files of a directory in listing (name) order.

    Raises
    ------
    NotADirectoryError
        If ``in_dir`` is not a directory
    """
    in_dir = Path(in_dir)
    if not in_dir.is_dir():
        raise NotADirectoryError(f"Input directory not found: {in_dir}")
    return sorted(p for p in in_dir.glob('*.wav') if p.is_file())


def load_audio(
    audio_path: str,
    mono: bool = True
) -> Tuple[np.ndarray, int]:
    """
    Load an audio file at its native sample rate.

    Parameters
    ----------
    audio_path : str
        Path to audio file
    mono : bool
        Whether to convert to mono

    Returns
    -------
    signal : np.ndarray
        Audio signal as numpy array
    sample_rate : int
        Sample rate of the file

    Raises
    ------
    FileNotFoundError
        If audio file doesn't exist
    ValueError
        If audio file is empty
    """
    if not os.path.exists(audio_path):
        raise FileNotFoundError(f"Audio file not found: {audio_path}")

    try:
        signal, sr = librosa.load(audio_path, sr=None, mono=mono)
    except Exception as e:
        logger.error(f"Error loading audio file {audio_path}: {e}")
        raise

    # Check if signal is valid
    if signal is None or signal.size == 0:
        raise ValueError(f"Empty audio signal: {audio_path}")

    return signal.astype(np.float64), int(sr)


def correct_polarity(signal: np.ndarray, polarity: int) -> np.ndarray:
    """
    Multiply the whole waveform by the detected polarity.

    Parameters
    ----------
    signal : np.ndarray
        Audio signal
    polarity : int
        +1 or -1

    Returns
    -------
    np.ndarray
        Polarity-corrected copy of the signal
    """
    if polarity not in (1, -1):
        raise ValueError(f"Polarity must be +1 or -1, got {polarity}")
    return polarity * np.asarray(signal, dtype=float)


def get_audio_info(audio_path: str) -> dict:
    """
    Get basic information about an audio file from its header.

    Parameters
    ----------
    audio_path : str
        Path to audio file

    Returns
    -------
    dict
        Dictionary with audio information
    """
    try:
        info = sf.info(str(audio_path))
        return {
            'path': str(audio_path),
            'sample_rate': info.samplerate,
            'duration_seconds': info.frames / info.samplerate,
            'num_samples': info.frames,
            'channels': info.channels,
            'subtype': info.subtype
        }
    except Exception as e:
        logger.error(f"Error getting info for {audio_path}: {e}")
        return {'path': str(audio_path), 'error': str(e)}
