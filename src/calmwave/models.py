"""Data models for CalmWave."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import DataIntegrityError, ValidationError

BASELINE_FREQUENCY_HZ = 440.0
MIN_FREQUENCY_HZ = 80.0
MAX_FREQUENCY_HZ = 2000.0
BASELINE_HARMONICS = (0.3, 0.2, 0.1, 0.05, 0.02, 0.01, 0.005, 0.002)

THEMES = ("ocean-calm", "forest-peace", "sunset-warmth", "moonlight-serenity")


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class FeatureVector:
    amplitude: float
    dominant_frequency_hz: float
    harmonic_bands: Tuple[float, ...]
    smoothed_amplitude: float


class AnimationState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


@dataclass(frozen=True)
class StateTransition:
    from_state: AnimationState
    to_state: AnimationState
    timestamp: float
    reason: str = ""


def _check_scale(name: str, value: Optional[int], required: bool = True) -> None:
    if value is None:
        if required:
            raise ValidationError(f"{name} is required.")
        return
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 10:
        raise ValidationError(f"{name} must be an integer between 0 and 10.")


@dataclass
class EmotionalState:
    initial_mood: int
    stress_level: int
    anxiety_level: int
    final_mood: Optional[int] = None
    calming_effectiveness: Optional[int] = None
    dominant_emotions: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_scale("initial_mood", self.initial_mood)
        _check_scale("stress_level", self.stress_level)
        _check_scale("anxiety_level", self.anxiety_level)
        _check_scale("final_mood", self.final_mood, required=False)
        _check_scale("calming_effectiveness", self.calming_effectiveness, required=False)
        self.dominant_emotions = tuple(sorted(set(self.dominant_emotions)))

    def to_record(self) -> Dict[str, Any]:
        return {
            "initialMood": self.initial_mood,
            "finalMood": self.final_mood,
            "stressLevel": self.stress_level,
            "anxietyLevel": self.anxiety_level,
            "calmingEffectiveness": self.calming_effectiveness,
            "dominantEmotions": list(self.dominant_emotions),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "EmotionalState":
        return cls(
            initial_mood=data["initialMood"],
            stress_level=data["stressLevel"],
            anxiety_level=data["anxietyLevel"],
            final_mood=data.get("finalMood"),
            calming_effectiveness=data.get("calmingEffectiveness"),
            dominant_emotions=tuple(data.get("dominantEmotions") or ()),
        )


@dataclass
class FinalEmotionalState:
    final_mood: int
    calming_effectiveness: Optional[int] = None
    dominant_emotions: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_scale("final_mood", self.final_mood)
        _check_scale("calming_effectiveness", self.calming_effectiveness, required=False)


@dataclass
class VoiceStressIndicators:
    average_pitch: float = 0.0
    pitch_variation: float = 0.0
    speaking_rate: float = 0.0
    pause_frequency: float = 0.0
    volume_consistency: float = 0.0


@dataclass
class TherapeuticMetrics:
    session_quality: float = 0.0
    engagement_level: float = 0.0
    response_time_ms: float = 0.0
    interruption_count: int = 0
    silence_duration_seconds: float = 0.0
    voice_stress_indicators: VoiceStressIndicators = field(default_factory=VoiceStressIndicators)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TherapeuticMetrics":
        if data is not None and not isinstance(data, dict):
            raise ValidationError("Therapeutic metrics must be a mapping.")
        data = dict(data or {})
        try:
            stress = VoiceStressIndicators(**(data.pop("voice_stress_indicators", None) or {}))
            return cls(voice_stress_indicators=stress, **data)
        except TypeError as exc:
            raise ValidationError(f"Unknown therapeutic metric: {exc}") from exc


@dataclass
class EncryptionEnvelope:
    algorithm_tag: str
    key_version: str
    nonce: bytes
    auth_tag: bytes
    ciphertext: bytes
    wrapped_key: Optional[bytes] = None

    @property
    def payload(self) -> str:
        return (self.nonce + self.auth_tag + self.ciphertext).hex()

    @classmethod
    def from_payload(
        cls,
        payload: str,
        algorithm_tag: str,
        key_version: str,
        nonce_size: int = 16,
        tag_size: int = 16,
        wrapped_key: Optional[bytes] = None,
    ) -> "EncryptionEnvelope":
        try:
            raw = bytes.fromhex(payload)
        except ValueError as exc:
            raise DataIntegrityError("Envelope payload is not valid hex.") from exc
        if len(raw) < nonce_size + tag_size:
            raise DataIntegrityError("Envelope payload is truncated.")
        return cls(
            algorithm_tag=algorithm_tag,
            key_version=key_version,
            nonce=raw[:nonce_size],
            auth_tag=raw[nonce_size:nonce_size + tag_size],
            ciphertext=raw[nonce_size + tag_size:],
            wrapped_key=wrapped_key,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "algorithmTag": self.algorithm_tag,
            "keyVersion": self.key_version,
            "payload": self.payload,
            "wrappedKey": self.wrapped_key.hex() if self.wrapped_key else None,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "EncryptionEnvelope":
        wrapped = data.get("wrappedKey")
        return cls.from_payload(
            data["payload"],
            algorithm_tag=data["algorithmTag"],
            key_version=data["keyVersion"],
            wrapped_key=bytes.fromhex(wrapped) if wrapped else None,
        )


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class Session:
    session_id: str
    user_id: str
    start_time: datetime
    emotional_state: EmotionalState
    therapeutic_metrics: TherapeuticMetrics = field(default_factory=TherapeuticMetrics)
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    transcript_ciphertext: Optional[EncryptionEnvelope] = None
    conversation_summary: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def mood_delta(self) -> Optional[int]:
        if self.emotional_state.final_mood is None:
            return None
        return self.emotional_state.final_mood - self.emotional_state.initial_mood

    def check_completion_invariant(self) -> None:
        flags = (
            self.end_time is not None,
            self.duration_seconds is not None,
            self.emotional_state.final_mood is not None,
        )
        if any(flags) and not all(flags):
            raise DataIntegrityError(
                f"Session {self.session_id} is partially completed."
            )

    def to_record(self) -> Dict[str, Any]:
        self.check_completion_invariant()
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "startTime": _format_time(self.start_time),
            "endTime": _format_time(self.end_time),
            "duration": self.duration_seconds,
            "conversationSummary": self.conversation_summary,
            "status": self.status.value,
            "emotionalState": json.dumps(self.emotional_state.to_record()),
            "therapeuticMetrics": json.dumps(asdict(self.therapeutic_metrics)),
            "encryptedTranscript": (
                json.dumps(self.transcript_ciphertext.to_record())
                if self.transcript_ciphertext
                else None
            ),
            "GSI1PK": self.user_id,
            "GSI1SK": _format_time(self.start_time),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Session":
        try:
            transcript = data.get("encryptedTranscript")
            session = cls(
                session_id=data["sessionId"],
                user_id=data["userId"],
                start_time=_parse_time(data["startTime"]),
                end_time=_parse_time(data.get("endTime")),
                duration_seconds=data.get("duration"),
                conversation_summary=data.get("conversationSummary"),
                status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
                emotional_state=EmotionalState.from_record(json.loads(data["emotionalState"])),
                therapeutic_metrics=TherapeuticMetrics.from_dict(
                    json.loads(data.get("therapeuticMetrics") or "{}")
                ),
                transcript_ciphertext=(
                    EncryptionEnvelope.from_record(json.loads(transcript))
                    if transcript
                    else None
                ),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DataIntegrityError(f"Malformed session record: {exc}") from exc
        session.check_completion_invariant()
        return session


@dataclass
class UserPreferences:
    theme: Optional[str] = None
    motion_intensity: float = 0.5
    color_intensity: float = 0.5
    animation_speed: float = 1.0
    reduced_motion: bool = False
    high_contrast: bool = False
    audio_sensitivity: float = 0.5

    def __post_init__(self) -> None:
        if self.theme is not None and self.theme not in THEMES:
            raise ValidationError(f"Unknown theme: {self.theme}")


@dataclass
class User:
    user_id: str
    created_at: datetime
    last_active_at: datetime
    is_anonymous: bool = True
    preferences: UserPreferences = field(default_factory=UserPreferences)
    total_sessions: int = 0

    def to_record(self) -> Dict[str, Any]:
        last_active = _format_time(self.last_active_at)
        return {
            "userId": self.user_id,
            "createdAt": _format_time(self.created_at),
            "lastActiveAt": last_active,
            "isAnonymous": str(self.is_anonymous).lower(),
            "preferences": json.dumps(asdict(self.preferences)),
            "totalSessions": self.total_sessions,
            "GSI1PK": str(self.is_anonymous).lower(),
            "GSI1SK": last_active,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "User":
        try:
            return cls(
                user_id=data["userId"],
                created_at=_parse_time(data["createdAt"]),
                last_active_at=_parse_time(data["lastActiveAt"]),
                is_anonymous=data["isAnonymous"] == "true",
                preferences=UserPreferences(**json.loads(data.get("preferences") or "{}")),
                total_sessions=int(data.get("totalSessions", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DataIntegrityError(f"Malformed user record: {exc}") from exc
