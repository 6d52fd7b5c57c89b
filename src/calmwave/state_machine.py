"""Animation state machine driving the wave display.

Transitions are recorded the moment they are requested. Renderers must treat
every transition as lasting ``transition_duration_ms`` (never less than 500 ms)
and interpolate across it; ``visuals()`` does that interpolation for them.
Flicker around the voice threshold is absorbed by the noise gate upstream,
not here.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .config import StateMachineConfig
from .models import AnimationState, StateTransition

logger = logging.getLogger("calmwave")

Listener = Callable[[StateTransition], None]

EASINGS: Dict[str, Callable[[float], float]] = {
    "ease-out": lambda t: 1 - (1 - t) ** 3,
    "ease-in-out": lambda t: 2 * t * t if t < 0.5 else 1 - (-2 * t + 2) ** 3 / 2,
    "linear": lambda t: t,
    "ease-in": lambda t: t**3,
    "gentle": lambda t: math.sin(t * math.pi / 2),
}


@dataclass(frozen=True)
class StateVisuals:
    amplitude: float
    frequency: float
    speed: float
    smoothing: float
    color: str


STATE_VISUALS: Dict[AnimationState, StateVisuals] = {
    AnimationState.IDLE: StateVisuals(0.3, 0.015, 0.8, 0.95, "baseline"),
    AnimationState.LISTENING: StateVisuals(1.0, 0.025, 1.2, 0.85, "userInput"),
    AnimationState.PROCESSING: StateVisuals(0.5, 0.02, 1.0, 0.9, "processing"),
    AnimationState.SPEAKING: StateVisuals(0.8, 0.03, 1.1, 0.88, "botOutput"),
    AnimationState.ERROR: StateVisuals(0.4, 0.018, 0.9, 0.92, "error"),
}


def _lerp(start: float, end: float, t: float) -> float:
    return start + (end - start) * t


class AnimationStateMachine:
    """Idle / Listening / Processing / Speaking / Error, one per connection."""

    def __init__(
        self,
        config: Optional[StateMachineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or StateMachineConfig()
        if self.config.easing not in EASINGS:
            raise ValueError(f"Unknown easing: {self.config.easing}")
        self._clock = clock
        self._lock = threading.RLock()
        self._state = AnimationState.IDLE
        self._previous = AnimationState.IDLE
        self._changed_at = clock() - self.duration_seconds
        self._voice_ceased_at: Optional[float] = None
        self._error_at: Optional[float] = None
        self._listeners: Dict[str, Listener] = {}
        self.history: deque[StateTransition] = deque(maxlen=self.config.history_size)

    @property
    def state(self) -> AnimationState:
        return self._state

    @property
    def duration_seconds(self) -> float:
        return self.config.transition_duration_ms / 1000.0

    def subscribe(self, purpose: str, listener: Listener) -> None:
        with self._lock:
            if purpose in self._listeners:
                raise ValueError(f"A listener is already registered for {purpose!r}.")
            self._listeners[purpose] = listener

    def unsubscribe(self, purpose: str) -> None:
        with self._lock:
            self._listeners.pop(purpose, None)

    def _transition(self, target: AnimationState, reason: str, now: Optional[float]) -> Optional[StateTransition]:
        if target == self._state:
            return None
        stamp = self._clock() if now is None else now
        event = StateTransition(self._state, target, stamp, reason)
        self._previous = self._state
        self._state = target
        self._changed_at = stamp
        self.history.append(event)
        logger.debug("State %s -> %s (%s)", event.from_state.value, target.value, reason)
        for purpose, listener in list(self._listeners.items()):
            try:
                listener(event)
            except Exception:
                logger.exception("Transition listener %r failed.", purpose)
        return event

    def voice_activity(self, active: bool, now: Optional[float] = None) -> Optional[StateTransition]:
        with self._lock:
            stamp = self._clock() if now is None else now
            if active:
                self._voice_ceased_at = None
                if self._state in (AnimationState.IDLE, AnimationState.SPEAKING):
                    return self._transition(AnimationState.LISTENING, "voice-activity-detected", stamp)
                return None
            if self._state == AnimationState.LISTENING and self._voice_ceased_at is None:
                self._voice_ceased_at = stamp
            return self.tick(stamp)

    def processing_started(self, now: Optional[float] = None) -> Optional[StateTransition]:
        with self._lock:
            if self._state != AnimationState.LISTENING:
                return None
            self._voice_ceased_at = None
            return self._transition(AnimationState.PROCESSING, "model-processing-started", now)

    def model_audio_arrived(self, now: Optional[float] = None) -> Optional[StateTransition]:
        with self._lock:
            if self._state not in (AnimationState.PROCESSING, AnimationState.IDLE):
                return None
            return self._transition(AnimationState.SPEAKING, "model-audio-arrived", now)

    def model_audio_ended(self, now: Optional[float] = None) -> Optional[StateTransition]:
        with self._lock:
            if self._state != AnimationState.SPEAKING:
                return None
            return self._transition(AnimationState.IDLE, "model-audio-ended", now)

    def error(self, reason: str = "transport-or-render-error", now: Optional[float] = None) -> Optional[StateTransition]:
        with self._lock:
            stamp = self._clock() if now is None else now
            self._error_at = stamp
            self._voice_ceased_at = None
            return self._transition(AnimationState.ERROR, reason, stamp)

    def healthy(self, now: Optional[float] = None) -> Optional[StateTransition]:
        with self._lock:
            if self._state != AnimationState.ERROR:
                return None
            self._error_at = None
            return self._transition(AnimationState.IDLE, "subsystem-healthy", now)

    def tick(self, now: Optional[float] = None) -> Optional[StateTransition]:
        """Apply time-driven rules: voice debounce and error recovery."""
        with self._lock:
            stamp = self._clock() if now is None else now
            if (
                self._state == AnimationState.LISTENING
                and self._voice_ceased_at is not None
                and stamp - self._voice_ceased_at >= self.config.voice_debounce_seconds
            ):
                self._voice_ceased_at = None
                return self._transition(AnimationState.IDLE, "voice-activity-ceased", stamp)
            if (
                self._state == AnimationState.ERROR
                and self._error_at is not None
                and stamp - self._error_at >= self.config.error_recovery_seconds
            ):
                self._error_at = None
                return self._transition(AnimationState.IDLE, "error-recovery-timeout", stamp)
            return None

    def transition_progress(self, now: Optional[float] = None) -> float:
        with self._lock:
            stamp = self._clock() if now is None else now
            elapsed = stamp - self._changed_at
            return float(min(max(elapsed / self.duration_seconds, 0.0), 1.0))

    def is_transitioning(self, now: Optional[float] = None) -> bool:
        return self.transition_progress(now) < 1.0

    def visuals(self, now: Optional[float] = None) -> StateVisuals:
        with self._lock:
            progress = self.transition_progress(now)
            target = STATE_VISUALS[self._state]
            if progress >= 1.0:
                return target
            source = STATE_VISUALS[self._previous]
            t = EASINGS[self.config.easing](progress)
            return StateVisuals(
                amplitude=_lerp(source.amplitude, target.amplitude, t),
                frequency=_lerp(source.frequency, target.frequency, t),
                speed=_lerp(source.speed, target.speed, t),
                smoothing=_lerp(source.smoothing, target.smoothing, t),
                color=source.color if t < 0.5 else target.color,
            )

    def recent_transitions(self) -> List[StateTransition]:
        with self._lock:
            return list(self.history)
