from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import numpy as np

from .driver import DriverConfig, UrlDriver
from .errors import ConfigError, ResourceError
from .frame import Frame
from .interfaces import HttpAuth
from .parameters import (
    ACQUIRE_PERIOD,
    COLOR_MODE,
    DATA_TYPE,
    HTTP_AUTH,
    HTTP_CONFIG_PATH,
    HTTP_LOAD_CONFIG,
    HTTP_PASSWORD,
    HTTP_TIMEOUT,
    HTTP_USERNAME,
    IMAGE_MODE,
    NUM_IMAGES,
    SIZE_X,
    SIZE_Y,
    SSL_VERIFY_HOST,
    SSL_VERIFY_PEER,
    STATUS_MESSAGE,
    URL_NAME,
    USE_HTTP,
)
from .viewer import launch_live_viewer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Acquire images from a URL, web camera or file")
    parser.add_argument("--url", default="", help="Image URL or local file path")
    parser.add_argument(
        "--mode",
        choices=["single", "multiple", "continuous"],
        default="single",
        help="Image mode: one frame, --num-images frames, or until --duration elapses",
    )
    parser.add_argument("--num-images", type=int, default=1, help="Frames per run in multiple mode")
    parser.add_argument("--period", type=float, default=0.0, help="Acquire period in seconds")
    parser.add_argument(
        "--duration", type=float, default=5.0, help="Run length in seconds for continuous mode"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Maximum wait in seconds for a run to finish before it is stopped",
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Fetch through the configurable HTTP transport (auth, TLS options)",
    )
    parser.add_argument(
        "--http-config", default=None, help="KEY=value file with HTTP settings to load at startup"
    )
    parser.add_argument(
        "--auth", choices=[a.value for a in HttpAuth], default=None, help="HTTP auth scheme"
    )
    parser.add_argument("--username", default=None, help="HTTP user name")
    parser.add_argument("--password", default=None, help="HTTP password or bearer token")
    parser.add_argument("--no-verify-peer", action="store_true", help="Skip TLS certificate checks")
    parser.add_argument("--no-verify-host", action="store_true", help="Skip TLS host name checks")
    parser.add_argument(
        "--http-timeout", type=float, default=0.0, help="HTTP timeout in seconds (0 waits forever)"
    )
    parser.add_argument("--max-buffers", type=int, default=-1, help="Frame pool buffer limit (-1 = unlimited)")
    parser.add_argument("--max-memory", type=int, default=-1, help="Frame pool byte limit (-1 = unlimited)")
    parser.add_argument("--port-name", default="URL1", help="Detector instance name")
    parser.add_argument("--save-dir", default=None, help="Directory to save each frame as .npy")
    parser.add_argument("--show-live", action="store_true", help="Open a napari live view")
    parser.add_argument("--report", action="store_true", help="Print a detailed driver report")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Console log level",
    )
    return parser


class FrameSaver:
    """Frame subscriber that writes each frame's samples to `<dir>/frame_<id>.npy`."""

    def __init__(self, out_dir: str | Path) -> None:
        self._dir = Path(out_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self.paths: list[Path] = []

    def __call__(self, frame: Frame, _channel: str) -> None:
        path = self._dir / f"frame_{frame.unique_id:06d}.npy"
        np.save(path, frame.data)
        self.paths.append(path)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _apply_settings(driver: UrlDriver, args) -> None:
    driver.write(URL_NAME, args.url)
    driver.write(IMAGE_MODE, args.mode)
    driver.write(NUM_IMAGES, args.num_images)
    driver.write(ACQUIRE_PERIOD, args.period)

    http_options_given = (
        args.http_config is not None
        or args.auth is not None
        or args.username is not None
        or args.password is not None
        or args.no_verify_peer
        or args.no_verify_host
        or args.http_timeout > 0
    )
    if http_options_given and not args.http:
        print(
            "Warning: HTTP options only apply with --http; the default reader ignores them.",
            file=sys.stderr,
        )

    if args.http_config is not None:
        driver.write(HTTP_CONFIG_PATH, args.http_config)
        driver.write(HTTP_LOAD_CONFIG, True)
    if args.auth is not None:
        driver.write(HTTP_AUTH, args.auth)
    if args.username is not None:
        driver.write(HTTP_USERNAME, args.username)
    if args.password is not None:
        driver.write(HTTP_PASSWORD, args.password)
    if args.no_verify_peer:
        driver.write(SSL_VERIFY_PEER, False)
    if args.no_verify_host:
        driver.write(SSL_VERIFY_HOST, False)
    if args.http_timeout > 0:
        driver.write(HTTP_TIMEOUT, args.http_timeout)
    if args.http:
        driver.write(USE_HTTP, True)


def main() -> int:
    args = build_parser().parse_args()
    _configure_logging(args.log_level)

    config = DriverConfig(
        port_name=args.port_name,
        max_buffers=args.max_buffers,
        max_memory=args.max_memory,
    )
    try:
        driver = UrlDriver(config)
    except (ConfigError, ResourceError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    with driver:
        try:
            _apply_settings(driver, args)
        except ConfigError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 2

        received: list[int] = []
        driver.subscribe(lambda frame, _channel: received.append(frame.unique_id))
        if args.save_dir:
            driver.subscribe(FrameSaver(args.save_dir))

        driver.start_acquisition()
        if args.show_live:
            launch_live_viewer(driver)
            driver.stop_acquisition()
            return 0

        if args.mode == "continuous" and not driver.wait_for_completion(timeout=args.duration):
            driver.stop_acquisition()
        if not driver.wait_for_completion(timeout=args.timeout):
            print(
                f"Warning: acquisition still running after {args.timeout:0.1f} s; stopping.",
                file=sys.stderr,
            )
            driver.stop_acquisition()
            driver.wait_for_completion(timeout=args.timeout)

        message = driver.read(STATUS_MESSAGE)
        print(
            f"url={args.url} mode={args.mode} frames={len(received)} "
            f"size={driver.read(SIZE_X)}x{driver.read(SIZE_Y)} "
            f"type={driver.read(DATA_TYPE).value} color={driver.read(COLOR_MODE).value}"
        )
        if args.report:
            driver.report(sys.stdout, details=2)
        if message:
            print(f"Error: {message}", file=sys.stderr)
            return 1
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
