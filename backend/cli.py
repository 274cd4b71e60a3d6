"""
dspremote command line.

    dspremote status
    dspremote config --yaml
    dspremote volume -12.5
    dspremote devices --backend Alsa
    dspremote eq --points 16
    dspremote spectrum --frames 50
    dspremote diagnostics
    dspremote prefs --auto-reconnect on

Host and ports default to the last endpoint stored in preferences.
"""

import argparse
import asyncio
import json
import sys
import time
from dataclasses import asdict

import numpy as np
import yaml

from config.preferences import PreferenceStore
from config.settings import get_settings
from core import shutdown
from core.errors import DspRemoteError
from dsp.filter_response import DEFAULT_SAMPLE_RATE, log_frequencies, sum_response_db
from dsp.spectrum_analyzer import SpectrumAnalyzer
from eq.mapping import extract_eq_view
from logger_config import configure_logging, get_logger
from session.client import Session
from session.reconnect import ReconnectController

logger = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dspremote", description="Remote control for a DSP engine")
    parser.add_argument("--host", help="Engine address (default: last used)")
    parser.add_argument("--control-port", type=int, help="Control websocket port")
    parser.add_argument("--telemetry-port", type=int, help="Telemetry websocket port")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Connection state, version, volume")

    config = sub.add_parser("config", help="Print the active configuration")
    config.add_argument("--yaml", action="store_true", help="YAML instead of JSON")

    volume = sub.add_parser("volume", help="Show or set the main volume")
    volume.add_argument("db", nargs="?", type=float, help="New volume in dB")

    devices = sub.add_parser("devices", help="List capture/playback devices")
    devices.add_argument("--backend", help="Audio backend (default from settings)")

    eq = sub.add_parser("eq", help="EQ bands and their combined response")
    eq.add_argument("--points", type=int, default=9, help="Response points, log-spaced 20 Hz - 20 kHz")

    spectrum = sub.add_parser("spectrum", help="Poll telemetry through the analyzer")
    spectrum.add_argument("--frames", type=int, default=20, help="Frames to poll")
    spectrum.add_argument("--interval", type=float, default=0.1, help="Seconds between polls")

    sub.add_parser("diagnostics", help="Dump session diagnostics as JSON")

    prefs = sub.add_parser("prefs", help="Show or change stored preferences")
    prefs.add_argument("--auto-reconnect", choices=("on", "off"), help="Enable/disable auto-reconnect")
    return parser


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


async def _connect(args, store: PreferenceStore) -> tuple[Session, ReconnectController, bool]:
    stored = store.last_endpoint()
    host = args.host or (stored.address if stored else None)
    control_port = args.control_port or (stored.control_port if stored else None)
    telemetry_port = args.telemetry_port or (stored.telemetry_port if stored else None)

    session = Session()
    controller = ReconnectController(session, store)
    shutdown.register_cleanup(session)
    shutdown.register_cleanup(controller)

    if not host or not control_port or not telemetry_port:
        print("No endpoint given and none stored; use --host/--control-port/--telemetry-port", file=sys.stderr)
        return session, controller, False

    ok = await controller.connect(host, control_port, telemetry_port)
    if not ok:
        print(f"Connection failed: {session.last_error}", file=sys.stderr)
    return session, controller, ok


async def _status(session: Session):
    _print_json(
        {
            "state": session.state.value,
            "endpoint": session.endpoint.control_uri if session.endpoint else None,
            "version": session.version,
            "engine_state": await session.get_state(),
            "volume_db": session.volume_db,
            "telemetry": session.telemetry_available,
            "spectrum_bins": session.spectrum_bins,
        }
    )


async def _config(session: Session, as_yaml: bool):
    config = session.config
    if as_yaml:
        print(yaml.safe_dump(config, sort_keys=False), end="")
    else:
        _print_json(config)


async def _volume(session: Session, db: float | None):
    if db is not None:
        sent = await session.set_volume(db)
        print(f"Volume set to {sent:.1f} dB")
    else:
        print(f"{await session.get_volume():.1f} dB")


async def _devices(session: Session, backend: str | None):
    devices = await session.list_devices(backend)
    print(f"Backend: {devices.backend}")
    for label, entries in (("Capture", devices.capture), ("Playback", devices.playback)):
        print(f"{label}:")
        for name, description in entries:
            print(f"  {name}" + (f"  ({description})" if description else ""))


def _eq(session: Session, points: int):
    config = session.config
    view = extract_eq_view(config)
    sample_rate = float((config.get("devices") or {}).get("samplerate") or DEFAULT_SAMPLE_RATE)
    freqs = log_frequencies(n=max(points, 2))
    response = sum_response_db(view.bands, freqs, sample_rate)
    _print_json(
        {
            "preamp_db": view.preamp_gain,
            "bands": [
                {"name": name, "order": order, **asdict(band)}
                for name, order, band in zip(view.filter_names, view.order_numbers, view.bands)
            ],
            "response_db": {f"{freq:.0f}": round(float(db), 2) for freq, db in zip(freqs, response)},
        }
    )


async def _spectrum(session: Session, frames: int, interval: float):
    analyzer = SpectrumAnalyzer()
    received = 0
    for _ in range(frames):
        if shutdown.is_shutting_down():
            break
        frame = await session.poll_telemetry()
        start = time.perf_counter()
        analyzer.update(frame, time.monotonic())
        logger.perf(f"Analyzer update took {(time.perf_counter() - start) * 1000:.2f}ms")
        received += 1
        if await shutdown.wait_for_shutdown(timeout=interval):
            break

    state = analyzer.get_state()
    if not state.initialized:
        print("No frames received")
        return
    _print_json(
        {
            "frames": received,
            "bins": int(state.live.size),
            "live_max_db": float(np.max(state.live)),
            "short_avg_mean_db": float(np.mean(state.short_avg)),
            "long_avg_mean_db": float(np.mean(state.long_avg)),
            "peak_max_db": float(np.max(state.peak)),
        }
    )


def _prefs(store: PreferenceStore, auto_reconnect: str | None):
    prefs = store.update(auto_reconnect=auto_reconnect == "on") if auto_reconnect else store.load()
    _print_json(
        {
            "auto_reconnect": prefs.auto_reconnect,
            "server": prefs.server,
            "control_port": prefs.control_port,
            "telemetry_port": prefs.telemetry_port,
            "file": str(store.path),
        }
    )


async def run(args) -> int:
    settings = get_settings()
    store = PreferenceStore(settings.paths.preferences_file)

    if args.command == "prefs":
        _prefs(store, args.auto_reconnect)
        return 0

    shutdown.setup_signal_handlers()
    session, _, ok = await _connect(args, store)
    try:
        if args.command == "diagnostics":
            _print_json(session.export_diagnostics())
            return 0 if ok else 1
        if not ok:
            return 1

        if args.command == "status":
            await _status(session)
        elif args.command == "config":
            await _config(session, args.yaml)
        elif args.command == "volume":
            await _volume(session, args.db)
        elif args.command == "devices":
            await _devices(session, args.backend)
        elif args.command == "eq":
            _eq(session, args.points)
        elif args.command == "spectrum":
            await _spectrum(session, args.frames, args.interval)
        return 0
    except DspRemoteError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await shutdown.cleanup_all()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(
        level="DEBUG" if args.verbose else settings.logging.level,
        perf_enabled=settings.logging.perf_enabled,
        json_format=settings.logging.format == "json",
        enable_file_logging=settings.logging.file_enabled,
        logs_dir=settings.paths.logs_dir,
    )
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130
    finally:
        shutdown.reset()


if __name__ == "__main__":
    sys.exit(main())
