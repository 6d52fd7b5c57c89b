"""Configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from typing import Optional
import yaml

SECRET_ENV_VAR = "CALMWAVE_ENCRYPTION_KEY"


@dataclass
class AnalysisConfig:
    fft_size: int = 512
    band_count: int = 8
    live_sample_rate_hz: int = 48000
    model_sample_rate_hz: int = 24000

    def __post_init__(self) -> None:
        if self.fft_size < 32 or self.fft_size & (self.fft_size - 1):
            raise ValueError("analysis.fft_size must be a power of two >= 32.")
        if self.band_count < 1:
            raise ValueError("analysis.band_count must be >= 1.")
        if self.live_sample_rate_hz <= 0 or self.model_sample_rate_hz <= 0:
            raise ValueError("analysis sample rates must be > 0.")


@dataclass
class SmoothingConfig:
    amplitude_alpha: float = 0.1
    frequency_alpha: float = 0.15
    harmonic_alpha: float = 0.2
    noise_gate: float = 0.008

    def __post_init__(self) -> None:
        for name in ("amplitude_alpha", "frequency_alpha", "harmonic_alpha"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ValueError(f"smoothing.{name} must be in (0, 1].")
        if not 0.0 <= self.noise_gate < 1.0:
            raise ValueError("smoothing.noise_gate must be in [0, 1).")


@dataclass
class MappingConfig:
    amplitude_scale: float = 700.0
    max_amplitude: float = 600.0
    harmonic_scale: float = 0.3
    baseline_amplitude: float = 25.0

    def __post_init__(self) -> None:
        if self.amplitude_scale <= 0 or self.max_amplitude <= 0:
            raise ValueError("mapping.amplitude_scale and max_amplitude must be > 0.")
        if self.harmonic_scale < 0:
            raise ValueError("mapping.harmonic_scale must be >= 0.")
        if not 0.0 <= self.baseline_amplitude <= self.max_amplitude:
            raise ValueError("mapping.baseline_amplitude must be in [0, max_amplitude].")


@dataclass
class StateMachineConfig:
    transition_duration_ms: int = 800
    voice_debounce_seconds: float = 2.5
    error_recovery_seconds: float = 5.0
    easing: str = "gentle"
    history_size: int = 64

    def __post_init__(self) -> None:
        if self.transition_duration_ms < 500:
            raise ValueError("state_machine.transition_duration_ms must be >= 500.")
        if not 2.0 <= self.voice_debounce_seconds <= 3.0:
            raise ValueError("state_machine.voice_debounce_seconds must be in [2, 3].")
        if self.error_recovery_seconds <= 0:
            raise ValueError("state_machine.error_recovery_seconds must be > 0.")
        if self.history_size < 1:
            raise ValueError("state_machine.history_size must be >= 1.")


@dataclass
class EncryptionConfig:
    local_secret: Optional[str] = None
    key_version: str = "1"
    managed_key_id: Optional[str] = None
    region: Optional[str] = None
    sanitize_transcripts: bool = True


@dataclass
class SessionConfig:
    abandon_after_seconds: int = 3600
    default_theme: str = "forest-peace"
    insights_limit: int = 5

    def __post_init__(self) -> None:
        if self.abandon_after_seconds <= 0:
            raise ValueError("session.abandon_after_seconds must be > 0.")


@dataclass
class Config:
    base_dir: str
    log_level: str = "INFO"
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    smoothing: SmoothingConfig = field(default_factory=SmoothingConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)
    state_machine: StateMachineConfig = field(default_factory=StateMachineConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    encryption = EncryptionConfig(**data.get("encryption", {}))
    if not encryption.local_secret:
        encryption.local_secret = os.environ.get(SECRET_ENV_VAR)

    return Config(
        base_dir=data.get("base_dir", ""),
        log_level=data.get("log_level", "INFO"),
        analysis=AnalysisConfig(**data.get("analysis", {})),
        smoothing=SmoothingConfig(**data.get("smoothing", {})),
        mapping=MappingConfig(**data.get("mapping", {})),
        state_machine=StateMachineConfig(**data.get("state_machine", {})),
        encryption=encryption,
        session=SessionConfig(**data.get("session", {})),
    )


def save_config(path: str, config: Config) -> None:
    data = asdict(config)
    # Secrets stay in the environment.
    data["encryption"].pop("local_secret", None)
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)
