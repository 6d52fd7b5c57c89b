"""Audio helpers."""

from __future__ import annotations

import wave
from typing import Iterator, Tuple

import numpy as np


def read_wav_mono(input_path: str) -> Tuple[np.ndarray, int]:
    """Read a 16-bit PCM WAV file, mixing all channels down to one int16 track."""
    with wave.open(input_path, "rb") as handle:
        channels = handle.getnchannels()
        sampwidth = handle.getsampwidth()
        framerate = handle.getframerate()
        frames = handle.getnframes()

        if sampwidth != 2:
            raise ValueError("Only 16-bit PCM is supported.")

        raw = handle.readframes(frames)

    data = np.frombuffer(raw, dtype=np.int16)
    if channels > 1:
        data = data.reshape(-1, channels).mean(axis=1).astype(np.int16)
    return data, framerate


def iter_frames(samples: np.ndarray, frame_size: int) -> Iterator[np.ndarray]:
    """Yield consecutive fixed-size frames; the tail is zero-padded."""
    if frame_size <= 0:
        raise ValueError("frame_size must be > 0.")
    for start in range(0, len(samples), frame_size):
        frame = samples[start:start + frame_size]
        if len(frame) < frame_size:
            frame = np.pad(frame, (0, frame_size - len(frame)))
        yield frame
