"""Audio decoding, silence detection and duration estimation for narration."""

from __future__ import annotations

import logging
import math
import os
import re

import mutagen
import numpy as np
import soundfile as sf

from pdf_to_epub_converter.errors import AlignmentDegraded
from pdf_to_epub_converter.models import AlignmentConfig

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[,.;:!?]")
_SENTENCE_END_RE = re.compile(r"[.!?]+")


def detect_silence_intervals(
    samples: np.ndarray, sample_rate: int, config: AlignmentConfig | None = None
) -> list[float]:
    """Find silent stretches in a narration track.

    The signal is cut into fixed windows and the RMS amplitude of each window
    is compared to ``config.silence_threshold`` (fraction of full scale). A
    run of quiet windows lasting at least ``config.min_silence_seconds`` is a
    silence interval, reported by its midpoint.

    Args:
        samples: Mono or multi-channel samples. Float input is expected in
            [-1, 1]; integer input is scaled by its dtype's maximum.
        sample_rate: Samples per second.
        config: Alignment constants.

    Returns:
        Midpoint timestamps in seconds, ascending, rounded to milliseconds.
    """
    config = config or AlignmentConfig()
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be positive, got {sample_rate}")

    data = np.asarray(samples)
    if np.issubdtype(data.dtype, np.integer):
        data = data.astype(np.float64) / np.iinfo(data.dtype).max
    else:
        data = data.astype(np.float64)
    if data.ndim > 1:
        data = data.mean(axis=1)

    window = max(1, int(round(sample_rate * config.silence_window_seconds)))
    n_windows = len(data) // window
    if n_windows == 0:
        return []

    frames = data[: n_windows * window].reshape(n_windows, window)
    rms = np.sqrt(np.mean(frames**2, axis=1))
    quiet = rms < config.silence_threshold

    window_seconds = window / sample_rate
    points: list[float] = []
    run_start: int | None = None
    for index, is_quiet in enumerate(np.append(quiet, False)):
        if is_quiet and run_start is None:
            run_start = index
        elif not is_quiet and run_start is not None:
            start = run_start * window_seconds
            end = index * window_seconds
            if end - start >= config.min_silence_seconds - 1e-9:
                points.append(round((start + end) / 2.0, 3))
            run_start = None
    return points


def load_audio(path: str) -> tuple[np.ndarray, int]:
    """Decode an audio file into float samples in [-1, 1].

    Raises:
        AlignmentDegraded: If the file cannot be decoded.
    """
    try:
        samples, sample_rate = sf.read(str(path), dtype="float32")
    except (RuntimeError, OSError) as exc:
        raise AlignmentDegraded(f"Cannot decode audio file {path}: {exc}") from exc
    return samples, int(sample_rate)


def get_audio_duration(path: str, config: AlignmentConfig | None = None) -> float:
    """Return the duration of an audio file in seconds.

    Metadata is tried first (mutagen, then libsndfile). When neither can read
    the file the duration is estimated from its size with the per-format byte
    rate in ``config``; that estimate is an approximation, not an exact
    length.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    config = config or AlignmentConfig()
    if not os.path.exists(path):
        raise FileNotFoundError(f"Audio file not found: {path}")

    try:
        audio = mutagen.File(path)
    except mutagen.MutagenError as exc:
        logger.debug("mutagen could not read %s: %s", path, exc)
        audio = None
    if audio is not None and getattr(audio, "info", None) is not None and audio.info.length > 0:
        return float(audio.info.length)

    try:
        info = sf.info(str(path))
        if info.duration > 0:
            return float(info.duration)
    except (RuntimeError, OSError) as exc:
        logger.debug("libsndfile could not read %s: %s", path, exc)

    size = os.path.getsize(path)
    estimate = size / config.byte_rate_for(path)
    logger.warning(
        "No duration metadata for %s; estimating %.1fs from %d bytes", path, estimate, size
    )
    return estimate


def estimate_text_duration(text: str, config: AlignmentConfig | None = None) -> float:
    """Estimate how long narrating *text* takes, in whole seconds.

    Reading speed comes from ``config.words_per_minute``; every punctuation
    mark adds a short pause and every sentence break a longer one.
    """
    config = config or AlignmentConfig()
    words = len(text.split())
    if words == 0:
        return 0.0
    seconds = words / (config.words_per_minute / 60.0)
    seconds += len(_PUNCTUATION_RE.findall(text)) * config.punctuation_pause_seconds
    sentences = len(_SENTENCE_END_RE.findall(text))
    seconds += max(0, sentences - 1) * config.sentence_pause_seconds
    return float(math.ceil(max(config.min_text_seconds, seconds)))
