from __future__ import annotations

import argparse
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import uvicorn

from meshviewer_export.app import create_app
from meshviewer_export.provider import MeshviewerProvider, ProviderConfig, dump_document
from meshviewer_export.receiver import SnapshotReceiver


LOGGER = logging.getLogger("meshviewer_export")


@dataclass(frozen=True)
class AppConfig:
    provider: ProviderConfig
    raw_json_path: Path
    listen_address: str
    listen_port: int
    run_once: bool
    output_dir: Path
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Meshviewer node and graph documents from a mesh snapshot")
    parser.add_argument(
        "--raw-json",
        default=os.getenv("MESHVIEWER_RAW_JSON", "./data/raw.json"),
        help="JSON snapshot mapping node keys to raw node records",
    )
    parser.add_argument(
        "--offline-time",
        type=float,
        default=_float_env("MESHVIEWER_OFFLINE_TIME", 900.0),
        help="seconds since lastseen after which a node is reported offline",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("MESHVIEWER_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("MESHVIEWER_LISTEN_PORT", 4000),
        help="http bind port",
    )
    parser.add_argument(
        "--once",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("MESHVIEWER_ONCE", False),
        help="write every document to --output-dir and exit",
    )
    parser.add_argument(
        "--output-dir",
        default=os.getenv("MESHVIEWER_OUTPUT_DIR", "./out"),
        help="directory the documents are written to with --once",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("MESHVIEWER_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(argv: Sequence[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if args.offline_time <= 0:
        parser.error("--offline-time must be positive")
    return AppConfig(
        provider=ProviderConfig(offline_time=args.offline_time),
        raw_json_path=Path(args.raw_json),
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        run_once=bool(args.once),
        output_dir=Path(args.output_dir),
        log_level=args.log_level.upper(),
    )


def write_documents(provider: MeshviewerProvider, output_dir: Path) -> list[Path]:
    written: list[Path] = []
    for name, handler in provider.routes().items():
        path = output_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dump_document(handler(None)), encoding="utf-8")
        written.append(path)
    return written


def main(argv: Sequence[str] | None = None) -> None:
    config = load_config(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    provider = MeshviewerProvider(SnapshotReceiver(config.raw_json_path), config.provider)

    if config.run_once:
        for path in write_documents(provider, config.output_dir):
            LOGGER.info("wrote %s", path)
        return

    LOGGER.info(
        "serving meshviewer documents from %s on http://%s:%d/",
        config.raw_json_path,
        config.listen_address,
        config.listen_port,
    )
    try:
        uvicorn.run(
            create_app(provider),
            host=config.listen_address,
            port=config.listen_port,
            log_level=config.log_level.lower(),
        )
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")


if __name__ == "__main__":
    main()
