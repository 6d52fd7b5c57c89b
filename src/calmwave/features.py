"""Audio feature extraction and smoothing for visual feedback.

Frequency and harmonic estimates here are approximations tuned for smooth,
calm rendering. They are not acoustic measurements: the dominant frequency is
the loudest analyser bin (or a zero-crossing estimate) and the harmonic bands
are per-segment energy profiles that drive wave complexity.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from .config import AnalysisConfig, MappingConfig, SmoothingConfig
from .models import (
    BASELINE_FREQUENCY_HZ,
    BASELINE_HARMONICS,
    MAX_FREQUENCY_HZ,
    MIN_FREQUENCY_HZ,
    FeatureVector,
)

logger = logging.getLogger("calmwave")

RMS_WEIGHT = 0.7
PEAK_WEIGHT = 0.3
# Bins 0 and 1 carry DC bias from the analyser.
FIRST_SPECTRAL_BIN = 2
GATE_RANGE_FACTOR = 0.5


def _as_samples(data) -> np.ndarray:
    """Normalize analyser bytes, int16 PCM or floats to float64 in [-1, 1]."""
    array = np.asarray(data)
    if array.dtype == np.uint8:
        samples = (array.astype(np.float64) - 128.0) / 128.0
    elif array.dtype == np.int16:
        samples = array.astype(np.float64) / 32768.0
    else:
        samples = array.astype(np.float64)
    samples = np.nan_to_num(samples.ravel(), nan=0.0, posinf=1.0, neginf=-1.0)
    return np.clip(samples, -1.0, 1.0)


def _as_magnitudes(data) -> np.ndarray:
    """Normalize analyser magnitudes (0-255 bytes or floats) to [0, 1]."""
    array = np.asarray(data)
    if array.dtype == np.uint8:
        mags = array.astype(np.float64) / 255.0
    else:
        mags = array.astype(np.float64)
    mags = np.nan_to_num(mags.ravel(), nan=0.0, posinf=1.0, neginf=0.0)
    return np.clip(mags, 0.0, 1.0)


def clamp_frequency(value: float) -> float:
    if not np.isfinite(value):
        return MIN_FREQUENCY_HZ
    return float(min(max(value, MIN_FREQUENCY_HZ), MAX_FREQUENCY_HZ))


def baseline_harmonics(band_count: int) -> tuple[float, ...]:
    bands = list(BASELINE_HARMONICS[:band_count])
    while len(bands) < band_count:
        bands.append(bands[-1] / 2.0 if bands else 0.0)
    return tuple(bands)


class FeatureExtractor:
    """Turns one buffer of audio into a raw (unsmoothed) FeatureVector."""

    def __init__(
        self,
        analysis: Optional[AnalysisConfig] = None,
        mapping: Optional[MappingConfig] = None,
    ) -> None:
        self.analysis = analysis or AnalysisConfig()
        self.mapping = mapping or MappingConfig()
        self.sample_rate_hz: Optional[int] = None

    def initialize(self, sample_rate_hz: Optional[int] = None) -> None:
        self.sample_rate_hz = int(sample_rate_hz or self.analysis.live_sample_rate_hz)

    @property
    def is_ready(self) -> bool:
        return self.sample_rate_hz is not None

    @property
    def band_count(self) -> int:
        return self.analysis.band_count

    def baseline(self) -> FeatureVector:
        return FeatureVector(
            amplitude=self.mapping.baseline_amplitude,
            dominant_frequency_hz=BASELINE_FREQUENCY_HZ,
            harmonic_bands=baseline_harmonics(self.band_count),
            smoothed_amplitude=self.mapping.baseline_amplitude,
        )

    def amplitude(self, samples: np.ndarray) -> float:
        if samples.size == 0:
            return 0.0
        rms = float(np.sqrt(np.mean(samples**2)))
        peak = float(np.max(np.abs(samples)))
        value = (rms * RMS_WEIGHT + peak * PEAK_WEIGHT) * self.mapping.amplitude_scale
        return float(min(max(value, 0.0), self.mapping.max_amplitude))

    def spectral_frequency(self, magnitudes: np.ndarray, sample_rate_hz: int) -> float:
        if magnitudes.size <= FIRST_SPECTRAL_BIN:
            return MIN_FREQUENCY_HZ
        search = magnitudes[FIRST_SPECTRAL_BIN:]
        if not np.any(search > 0):
            return MIN_FREQUENCY_HZ
        index = int(np.argmax(search)) + FIRST_SPECTRAL_BIN
        nyquist = sample_rate_hz / 2.0
        return clamp_frequency(index / magnitudes.size * nyquist)

    def zero_crossing_frequency(self, samples: np.ndarray, sample_rate_hz: int) -> float:
        if samples.size < 2:
            return MIN_FREQUENCY_HZ
        signs = samples >= 0
        crossings = int(np.count_nonzero(signs[1:] != signs[:-1]))
        return clamp_frequency(crossings / 2.0 * (sample_rate_hz / samples.size))

    def spectral_bands(self, magnitudes: np.ndarray) -> tuple[float, ...]:
        bands = []
        for segment in np.array_split(magnitudes, self.band_count):
            level = float(segment.mean()) if segment.size else 0.0
            bands.append(level * self.mapping.harmonic_scale)
        return tuple(bands)

    def sample_bands(self, samples: np.ndarray) -> tuple[float, ...]:
        bands = []
        for segment in np.array_split(samples, self.band_count):
            spread = float(segment.std()) if segment.size else 0.0
            bands.append(spread * self.mapping.harmonic_scale)
        return tuple(bands)

    def extract_live(self, time_data, frequency_data) -> FeatureVector:
        """Analyse live analyser output (time-domain plus spectrum)."""
        if not self.is_ready or time_data is None or frequency_data is None:
            return self.baseline()
        samples = _as_samples(time_data)
        magnitudes = _as_magnitudes(frequency_data)
        if samples.size == 0 or magnitudes.size == 0:
            return self.baseline()
        amplitude = self.amplitude(samples)
        return FeatureVector(
            amplitude=amplitude,
            dominant_frequency_hz=self.spectral_frequency(magnitudes, self.sample_rate_hz),
            harmonic_bands=self.spectral_bands(magnitudes),
            smoothed_amplitude=amplitude,
        )

    def extract_samples(self, samples, sample_rate_hz: Optional[int] = None) -> FeatureVector:
        """Analyse a raw sample buffer without spectral data (remote-model audio)."""
        if samples is None:
            return self.baseline()
        data = _as_samples(samples)
        if data.size == 0:
            return self.baseline()
        rate = sample_rate_hz or self.analysis.model_sample_rate_hz
        amplitude = self.amplitude(data)
        return FeatureVector(
            amplitude=amplitude,
            dominant_frequency_hz=self.zero_crossing_frequency(data, rate),
            harmonic_bands=self.sample_bands(data),
            smoothed_amplitude=amplitude,
        )

    def spectrum_from_samples(self, samples) -> np.ndarray:
        """Magnitude spectrum of a sample buffer, shaped like analyser output."""
        data = _as_samples(samples)
        size = self.analysis.fft_size
        frame = np.zeros(size)
        frame[: min(size, data.size)] = data[:size]
        window = np.hanning(size)
        spectrum = np.abs(np.fft.rfft(frame * window))[: size // 2]
        peak = spectrum.max() if spectrum.size else 0.0
        return spectrum / peak if peak > 0 else spectrum


class FeatureSmoother:
    """Exponential smoothing plus a soft noise gate, one per audio source."""

    def __init__(
        self,
        smoothing: Optional[SmoothingConfig] = None,
        mapping: Optional[MappingConfig] = None,
        band_count: int = 8,
    ) -> None:
        self.smoothing = smoothing or SmoothingConfig()
        self.mapping = mapping or MappingConfig()
        self.band_count = band_count
        self.reset()

    def reset(self) -> None:
        self._amplitude = 0.0
        self._frequency = BASELINE_FREQUENCY_HZ
        self._harmonics = np.array(baseline_harmonics(self.band_count), dtype=np.float64)
        self._last = FeatureVector(
            amplitude=self.mapping.baseline_amplitude,
            dominant_frequency_hz=BASELINE_FREQUENCY_HZ,
            harmonic_bands=tuple(self._harmonics.tolist()),
            smoothed_amplitude=0.0,
        )

    @property
    def threshold(self) -> float:
        return self.smoothing.noise_gate * self.mapping.amplitude_scale

    @property
    def gate_open(self) -> bool:
        return self.threshold > 0 and self._amplitude >= self.threshold

    @property
    def last(self) -> FeatureVector:
        return self._last

    def gate(self, amplitude: float) -> float:
        threshold = self.threshold
        baseline = self.mapping.baseline_amplitude
        if amplitude < threshold:
            return baseline
        gate_range = threshold * GATE_RANGE_FACTOR
        if gate_range > 0 and amplitude < threshold + gate_range:
            factor = (amplitude - threshold) / gate_range
            return baseline + (amplitude - baseline) * factor
        return amplitude

    def _clean_amplitude(self, value: float) -> float:
        if not np.isfinite(value):
            return 0.0
        return float(min(max(value, 0.0), self.mapping.max_amplitude))

    def _clean_bands(self, bands: Sequence[float]) -> np.ndarray:
        raw = np.nan_to_num(np.asarray(bands, dtype=np.float64).ravel(), nan=0.0)
        raw = np.clip(raw, 0.0, max(self.mapping.harmonic_scale, 0.0))
        out = np.zeros(self.band_count)
        out[: min(raw.size, self.band_count)] = raw[: self.band_count]
        return out

    def process(self, raw: FeatureVector) -> FeatureVector:
        try:
            a_amp = self.smoothing.amplitude_alpha
            a_freq = self.smoothing.frequency_alpha
            a_harm = self.smoothing.harmonic_alpha

            amplitude = self._clean_amplitude(raw.amplitude)
            frequency = float(clamp_frequency(raw.dominant_frequency_hz))
            bands = self._clean_bands(raw.harmonic_bands)

            self._amplitude = self._amplitude * (1 - a_amp) + amplitude * a_amp
            self._frequency = self._frequency * (1 - a_freq) + frequency * a_freq
            self._harmonics = self._harmonics * (1 - a_harm) + bands * a_harm

            self._last = FeatureVector(
                amplitude=self.gate(self._amplitude),
                dominant_frequency_hz=clamp_frequency(self._frequency),
                harmonic_bands=tuple(float(b) for b in self._harmonics),
                smoothed_amplitude=self._amplitude,
            )
        except Exception:  # rendering must keep going on bad input
            logger.exception("Feature smoothing failed; reusing last output.")
        return self._last
