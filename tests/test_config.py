import os
import tempfile

import pytest
import yaml

from calmwave.config import (
    SECRET_ENV_VAR,
    AnalysisConfig,
    Config,
    StateMachineConfig,
    load_config,
    save_config,
)


def test_save_and_load_config_roundtrip():
    cfg = Config(base_dir="C:/CalmWave")
    cfg.session.default_theme = "ocean-calm"
    cfg.state_machine.transition_duration_ms = 900

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "calmwave_config.yml")
        save_config(path, cfg)
        loaded = load_config(path)

    assert loaded.base_dir == "C:/CalmWave"
    assert loaded.session.default_theme == "ocean-calm"
    assert loaded.state_machine.transition_duration_ms == 900
    assert loaded.mapping.amplitude_scale == 700.0


def test_save_config_never_writes_secret():
    cfg = Config(base_dir="")
    cfg.encryption.local_secret = "hunter2"

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "calmwave_config.yml")
        save_config(path, cfg)
        with open(path, "r", encoding="utf-8") as handle:
            text = handle.read()

    assert "hunter2" not in text
    assert "local_secret" not in text


def test_secret_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv(SECRET_ENV_VAR, "from-env")
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "calmwave_config.yml")
        with open(path, "w", encoding="utf-8") as handle:
            yaml.safe_dump({"base_dir": tmp}, handle)
        loaded = load_config(path)

    assert loaded.encryption.local_secret == "from-env"


def test_transition_duration_has_floor():
    with pytest.raises(ValueError):
        StateMachineConfig(transition_duration_ms=200)


def test_debounce_window_bounds():
    with pytest.raises(ValueError):
        StateMachineConfig(voice_debounce_seconds=5.0)


def test_fft_size_must_be_power_of_two():
    with pytest.raises(ValueError):
        AnalysisConfig(fft_size=500)
