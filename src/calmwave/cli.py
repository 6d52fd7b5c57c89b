"""CLI entry point."""

from __future__ import annotations

import argparse
import json
import os
import threading
from datetime import datetime

from .audio_utils import iter_frames, read_wav_mono
from .capture import list_input_devices, stream_input
from .config import Config, load_config
from .continuity import ContinuityEngine
from .encryption import EncryptionService
from .logging_utils import setup_logging
from .orchestrator import SessionOrchestrator
from .pipeline import AudioConnection
from .renderer import render_dashboard
from .service import SessionEventService
from .store import RecordStore, ensure_structure


def _load(args) -> Config:
    if os.path.exists(args.config):
        cfg = load_config(args.config)
    else:
        cfg = Config(base_dir="")
    if args.base_dir:
        cfg.base_dir = args.base_dir
    cfg.base_dir = cfg.base_dir or os.getcwd()
    paths = ensure_structure(cfg.base_dir)
    setup_logging(paths["logs"], cfg.log_level, console=args.command == "monitor")
    return cfg


def build_service(cfg: Config) -> SessionEventService:
    store = RecordStore(cfg.base_dir)
    encryption = EncryptionService.from_config(cfg.encryption)
    continuity = ContinuityEngine(store)
    orchestrator = SessionOrchestrator(store, encryption, continuity, config=cfg.session)
    return SessionEventService(orchestrator)


def _print_json(payload: dict) -> int:
    print(json.dumps(payload, indent=2, default=str))
    return 0 if payload.get("success", True) else 1


def _analyze(cfg: Config, path: str, every: int) -> int:
    samples, rate = read_wav_mono(path)
    frame_size = cfg.analysis.fft_size
    clock = {"now": 0.0}
    connection = AudioConnection(cfg, clock=lambda: clock["now"], sample_rate_hz=rate)
    connection.state_machine.subscribe(
        "cli",
        lambda t: print(f"[{t.timestamp:8.2f}s] {t.from_state.value} -> {t.to_state.value}"),
    )
    peak = 0.0
    count = 0
    for index, frame in enumerate(iter_frames(samples, frame_size)):
        clock["now"] = index * frame_size / rate
        vector = connection.user_audio(frame)
        peak = max(peak, vector.amplitude)
        count += 1
        if every and index % every == 0:
            bands = " ".join(f"{b:.2f}" for b in vector.harmonic_bands)
            print(
                f"{clock['now']:8.2f}s amp={vector.amplitude:7.2f} "
                f"freq={vector.dominant_frequency_hz:7.1f}Hz bands=[{bands}]"
            )
    clock["now"] += cfg.state_machine.voice_debounce_seconds
    connection.frame()
    print(f"Frames: {count}  Peak amplitude: {peak:.2f}  Final state: {connection.state_machine.state.value}")
    return 0


def _monitor(cfg: Config, device: str | None, seconds: int | None) -> int:
    rate = cfg.analysis.live_sample_rate_hz
    connection = AudioConnection(cfg, sample_rate_hz=rate)
    connection.state_machine.subscribe(
        "cli", lambda t: print(f"{t.from_state.value} -> {t.to_state.value}")
    )
    stop = threading.Event()
    if seconds:
        threading.Timer(seconds, stop.set).start()
    stream_input(
        connection.user_audio,
        sample_rate_hz=rate,
        block_size=cfg.analysis.fft_size,
        device_name=device,
        stop_event=stop,
        on_status=lambda status: connection.transport_error(status),
    )
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(prog="calmwave")
    parser.add_argument("--config", default="calmwave_config.yml", help="Config.")
    parser.add_argument("--base-dir", help="Base data directory.")
    sub = parser.add_subparsers(dest="command")

    devices_cmd = sub.add_parser("devices")
    devices_cmd.add_argument("--match", help="Filter device names by substring.")

    analyze_cmd = sub.add_parser("analyze")
    analyze_cmd.add_argument("audio_path", help="Path to a 16-bit WAV file.")
    analyze_cmd.add_argument("--every", type=int, default=0, help="Print every Nth frame.")

    monitor_cmd = sub.add_parser("monitor")
    monitor_cmd.add_argument("--device", help="Preferred device name substring.")
    monitor_cmd.add_argument("--seconds", type=int, help="Seconds. Omit for manual stop.")

    start_cmd = sub.add_parser("start")
    start_cmd.add_argument("--user", required=True, help="User id.")
    start_cmd.add_argument("--mood", type=int, required=True, help="Initial mood 0-10.")
    start_cmd.add_argument("--stress", type=int, required=True, help="Stress 0-10.")
    start_cmd.add_argument("--anxiety", type=int, required=True, help="Anxiety 0-10.")

    complete_cmd = sub.add_parser("complete")
    complete_cmd.add_argument("--session", required=True, help="Session id.")
    complete_cmd.add_argument("--user", required=True, help="User id.")
    complete_cmd.add_argument("--final-mood", type=int, required=True, help="Final mood 0-10.")
    complete_cmd.add_argument("--calming", type=int, help="Calming effectiveness 0-10.")
    complete_cmd.add_argument("--transcript", help="Path to a transcript text file.")
    complete_cmd.add_argument(
        "--consent", action="store_true", help="User consents to transcript processing."
    )

    context_cmd = sub.add_parser("context")
    context_cmd.add_argument("--user", required=True, help="User id.")

    dashboard_cmd = sub.add_parser("dashboard")
    dashboard_cmd.add_argument("--user", required=True, help="User id.")
    dashboard_cmd.add_argument("--limit", type=int, help="Recent sessions to include.")
    dashboard_cmd.add_argument("--markdown", action="store_true", help="Render Markdown.")

    sub.add_parser("reap")
    sub.add_parser("selfcheck")

    args = parser.parse_args()
    if args.command == "devices":
        devices = list_input_devices()
        if args.match:
            devices = [
                d for d in devices if args.match.lower() in d.get("name", "").lower()
            ]
        for device in devices:
            name = device.get("name", "Unknown")
            index = device.get("index", "?")
            channels = device.get("max_input_channels", 0)
            print(f"[{index}] {name} (inputs: {channels})")
        return 0

    if args.command is None:
        parser.print_help()
        return 0

    cfg = _load(args)

    if args.command == "analyze":
        return _analyze(cfg, args.audio_path, args.every)

    if args.command == "monitor":
        return _monitor(cfg, args.device, args.seconds)

    if args.command == "selfcheck":
        encryption = EncryptionService.from_config(cfg.encryption)
        print("Encryption self-check: " + ("ok" if encryption.ready else "FAILED"))
        return 0 if encryption.ready else 1

    service = build_service(cfg)

    if args.command == "start":
        return _print_json(
            service.start_session(
                args.user,
                {
                    "initial_mood": args.mood,
                    "stress_level": args.stress,
                    "anxiety_level": args.anxiety,
                },
            )
        )

    if args.command == "complete":
        transcript = ""
        if args.transcript:
            with open(args.transcript, "r", encoding="utf-8") as handle:
                transcript = handle.read()
        return _print_json(
            service.complete_session(
                args.session,
                args.user,
                transcript,
                {"final_mood": args.final_mood, "calming_effectiveness": args.calming},
                user_consent=args.consent,
            )
        )

    if args.command == "context":
        return _print_json(service.get_user_context(args.user))

    if args.command == "dashboard":
        if not args.markdown:
            return _print_json(service.get_dashboard(args.user, args.limit))
        orchestrator = service.orchestrator
        insights = orchestrator.get_session_insights(args.user, args.limit)
        context = orchestrator.continuity.get_user_context(args.user)
        print(
            render_dashboard(
                args.user,
                insights,
                date=datetime.now().strftime("%Y-%m-%d"),
                greeting=context.personalized_greeting,
            )
        )
        return 0

    if args.command == "reap":
        reaped = service.orchestrator.reap_abandoned()
        print(f"Abandoned sessions finalized: {len(reaped)}")
        for session_id in reaped:
            print(f"  {session_id}")
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
