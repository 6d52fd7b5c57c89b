"""Per-connection audio pipeline: extraction, smoothing and animation state."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Config
from .features import FeatureExtractor, FeatureSmoother
from .models import AnimationState, FeatureVector
from .state_machine import AnimationStateMachine, StateVisuals

logger = logging.getLogger("calmwave")


@dataclass(frozen=True)
class Frame:
    features: FeatureVector
    state: AnimationState
    transition_progress: float
    visuals: StateVisuals


class AudioConnection:
    """Everything one live connection needs; never shared between connections.

    The renderer pulls ``frame()`` once per display frame. Audio callbacks push
    buffers through ``user_audio`` and ``model_audio``. All calls are serialized.
    """

    def __init__(
        self,
        config: Config,
        clock: Callable[[], float] = time.monotonic,
        sample_rate_hz: Optional[int] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self.extractor = FeatureExtractor(config.analysis, config.mapping)
        self.extractor.initialize(sample_rate_hz)
        band_count = config.analysis.band_count
        self.user_smoother = FeatureSmoother(config.smoothing, config.mapping, band_count)
        self.model_smoother = FeatureSmoother(config.smoothing, config.mapping, band_count)
        self.state_machine = AnimationStateMachine(config.state_machine, clock=clock)
        self._current = self.extractor.baseline()
        self._model_active = False

    def user_audio(self, time_data, frequency_data=None) -> FeatureVector:
        with self._lock:
            if frequency_data is None:
                frequency_data = self.extractor.spectrum_from_samples(time_data)
            raw = self.extractor.extract_live(time_data, frequency_data)
            vector = self.user_smoother.process(raw)
            if not self._model_active:
                self._current = vector
            self.state_machine.voice_activity(self.user_smoother.gate_open, self._clock())
            return vector

    def model_processing(self) -> None:
        with self._lock:
            self.state_machine.processing_started(self._clock())

    def model_audio(self, samples, sample_rate_hz: Optional[int] = None) -> FeatureVector:
        with self._lock:
            raw = self.extractor.extract_samples(samples, sample_rate_hz)
            vector = self.model_smoother.process(raw)
            self._current = vector
            # Retried on every chunk; audio can arrive before processing starts.
            self.state_machine.model_audio_arrived(self._clock())
            self._model_active = self.state_machine.state == AnimationState.SPEAKING
            return vector

    def model_audio_done(self) -> None:
        with self._lock:
            self._model_active = False
            self.model_smoother.reset()
            self.state_machine.model_audio_ended(self._clock())

    def transport_error(self, reason: str = "transport-error") -> None:
        with self._lock:
            logger.warning("Connection error reported: %s", reason)
            self._model_active = False
            self.state_machine.error(reason, self._clock())

    def transport_healthy(self) -> None:
        with self._lock:
            self.state_machine.healthy(self._clock())

    def frame(self) -> Frame:
        with self._lock:
            now = self._clock()
            self.state_machine.tick(now)
            return Frame(
                features=self._current,
                state=self.state_machine.state,
                transition_progress=self.state_machine.transition_progress(now),
                visuals=self.state_machine.visuals(now),
            )

    def close(self) -> None:
        with self._lock:
            self.user_smoother.reset()
            self.model_smoother.reset()
            self._current = self.extractor.baseline()
