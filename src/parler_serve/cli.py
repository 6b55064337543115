"""
Command-Line Interface for parler-serve.

Starts the HTTP server with uvicorn. Flags override settings.yaml, which
overrides built-in defaults.

Usage Examples:
    # Serve on the default address (0.0.0.0:8039), best available backend
    parler-serve

    # Force CPU inference even when a GPU is present
    parler-serve --cpu

    # Bind somewhere else with another settings file
    parler-serve --host 127.0.0.1 --port 9000 --config my-settings.yaml

    # Show which backend would be selected and exit
    parler-serve --show-device

Environment Variables:
    PARLER_SERVE_SETTINGS: Settings file path
    PARLER_SERVE_FORCE_CPU: 1 to force CPU
    PARLER_SERVE_LOG_LEVEL: 1-4
"""

from __future__ import annotations

import argparse
import json
from typing import List, Optional

from parler_serve import __version__
from parler_serve.core.config import ConfigValidationError, Settings, load_settings, settings_path
from parler_serve.core.device import select_device
from parler_serve.core.logging import configure_logging, get_logger, info, warn

_LOG = get_logger("parler-serve.cli")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="parler-serve", description="Parler-TTS HTTP server")

    parser.add_argument("--cpu", action="store_true", help="Force CPU inference (skip GPU backends)")
    parser.add_argument("--host", help="Bind address (default from settings: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Bind port (default from settings: 8039)")
    parser.add_argument("--config", help="Settings YAML (default: config/settings.yaml)")
    parser.add_argument("--log-level", help="Log level: 1-4 or MINIMAL/NORMAL/VERBOSE/DEBUG")
    parser.add_argument("--show-device", action="store_true",
                        help="Print the selected compute backend as JSON and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser.parse_args(argv)


def _load(path: Optional[str]) -> Settings:
    path = path or settings_path()
    try:
        return load_settings(path)
    except FileNotFoundError:
        warn(_LOG, "settings_missing", path=path, fallback="defaults")
        return Settings(raw={})


def build_settings(args: argparse.Namespace) -> Settings:
    """Apply CLI flags on top of the settings file."""
    settings = _load(args.config)
    if args.cpu:
        settings = settings.with_overrides("device", force_cpu=True)
    server = {}
    if args.host:
        server["host"] = args.host
    if args.port is not None:
        server["port"] = args.port
    if server:
        settings = settings.with_overrides("server", **server)
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    if args.log_level:
        configure_logging(level=args.log_level, force=True)

    settings = build_settings(args)
    try:
        config = settings.get_service_config()
    except ConfigValidationError as e:
        raise SystemExit(f"invalid configuration: {e}")

    if args.show_device:
        profile = select_device(force_cpu=config.device.force_cpu)
        print(json.dumps(profile.to_dict(), indent=2))
        return 0

    import uvicorn

    from parler_serve.main import create_app

    app = create_app(settings=settings)
    info(_LOG, "serving", host=config.server.host, port=config.server.port, force_cpu=config.device.force_cpu)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
