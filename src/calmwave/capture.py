"""Live microphone capture."""

from __future__ import annotations

from typing import Optional, List, Dict, Any, Callable


def list_input_devices() -> List[Dict[str, Any]]:
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise RuntimeError("sounddevice is required for device detection.") from exc

    return [dict(d) for d in sd.query_devices() if d.get("max_input_channels", 0) > 0]


def select_preferred_device(
    candidates: List[Dict[str, Any]],
    prefer_name: Optional[str] = None,
    default_index: Optional[int] = None,
) -> Dict[str, Any]:
    if not candidates:
        raise RuntimeError("No input devices found.")
    if prefer_name:
        preferred = [
            d for d in candidates if prefer_name.lower() in d.get("name", "").lower()
        ]
        if preferred:
            return preferred[0]

    if default_index is not None:
        for device in candidates:
            if device.get("index") == default_index:
                return device

    return candidates[0]


def find_input_device(prefer_name: Optional[str] = None) -> Dict[str, Any]:
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise RuntimeError("sounddevice is required for device detection.") from exc

    default_index = None
    default = getattr(sd.default, "device", None)
    if isinstance(default, (list, tuple)) and default:
        default_index = default[0]
    return select_preferred_device(
        list_input_devices(), prefer_name=prefer_name, default_index=default_index
    )


def stream_input(
    on_block: Callable[[Any], None],
    sample_rate_hz: int = 48000,
    block_size: int = 512,
    device_name: Optional[str] = None,
    stop_event=None,
    on_status: Optional[Callable[[str], None]] = None,
) -> None:
    """Call ``on_block`` with each mono int16 block until ``stop_event`` is set."""
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise RuntimeError("sounddevice is required for capture.") from exc

    device = find_input_device(device_name)

    def _callback(indata, _frames, _time, status):
        if status and on_status is not None:
            on_status(str(status))
        on_block(indata[:, 0].copy())

    try:
        with sd.InputStream(
            samplerate=sample_rate_hz,
            channels=1,
            dtype="int16",
            device=device.get("index"),
            blocksize=block_size,
            callback=_callback,
        ):
            while True:
                if stop_event is not None and stop_event.is_set():
                    break
                sd.sleep(100)
    except KeyboardInterrupt:
        pass
