from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import Flask, Response, jsonify, request

from downloader import (
    DEFAULT_MAX_PLAYLIST_BYTES,
    DEFAULT_TIMEOUT,
    DEFAULT_USER_AGENT,
    PlaylistDownloader,
)
from getm3u import UpstreamError, ValidationError, handle_getm3u
from profiles import ConfigStore, ProfileNotFoundError, resolve_config_path

LOGGER_NAME = "m3ufilter"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = "logs/m3ufilter.log"
CONTAINER_RUNTIME_DIR = Path("/app")

logger = logging.getLogger(LOGGER_NAME)


def _resolve_runtime_dir(config_dir: Path) -> Path:
    """Determine where runtime artefacts (logs) should live."""

    env_override = os.environ.get("M3UFILTER_RUNTIME_DIR")
    if env_override:
        return Path(env_override).expanduser()

    if CONTAINER_RUNTIME_DIR.exists():
        return CONTAINER_RUNTIME_DIR

    return config_dir


def _resolve_path_setting(raw_value: Any, default_path: Path, base_dir: Path) -> Path:
    """Resolve a path from config, allowing relative paths."""

    if isinstance(raw_value, str) and raw_value.strip():
        candidate = Path(raw_value.strip()).expanduser()
        if not candidate.is_absolute():
            candidate = (base_dir / candidate).resolve()
        return candidate
    return default_path


def _coerce_positive_float(value: Any) -> Optional[float]:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric <= 0:
        return None
    return numeric


def _coerce_positive_int(value: Any) -> Optional[int]:
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        return None
    if numeric <= 0:
        return None
    return numeric


def setup_logging(level_name: str = DEFAULT_LOG_LEVEL, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure logging to stream to stderr and, optionally, a rotating log file."""
    logger_obj = logging.getLogger(LOGGER_NAME)

    # Avoid duplicating handlers if setup_logging is called multiple times
    if logger_obj.handlers:
        return logger_obj

    log_level = getattr(logging, str(level_name).upper(), logging.INFO)
    logger_obj.setLevel(log_level)
    logger_obj.propagate = False

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(log_level)
    logger_obj.addHandler(stream_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = TimedRotatingFileHandler(
                str(log_file),
                when="midnight",
                backupCount=7,
                encoding="utf-8",
                utc=False,
                interval=1,
            )
        except OSError as exc:
            logger_obj.error("Unable to open log file '%s': %s", log_file, exc)
        else:
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            logger_obj.addHandler(file_handler)
            logger_obj.info("Detailed logs will be written to: %s", log_file)

    return logger_obj


def build_downloader(config_store: ConfigStore) -> PlaylistDownloader:
    fetch_cfg = config_store.section("fetch")
    user_agent = fetch_cfg.get("user_agent")
    return PlaylistDownloader(
        timeout=_coerce_positive_float(fetch_cfg.get("timeout")) or DEFAULT_TIMEOUT,
        max_bytes=_coerce_positive_int(fetch_cfg.get("max_playlist_bytes"))
        or DEFAULT_MAX_PLAYLIST_BYTES,
        user_agent=user_agent if isinstance(user_agent, str) and user_agent.strip() else DEFAULT_USER_AGENT,
    )


def _error_response(message: str, status_code: int) -> Any:
    return jsonify({"error": message}), status_code


def create_app(
    config_store: Optional[ConfigStore] = None,
    downloader: Optional[PlaylistDownloader] = None,
) -> Flask:
    app = Flask(__name__)

    store = config_store or ConfigStore(resolve_config_path())
    playlist_downloader = downloader or build_downloader(store)

    app.config["CONFIG_STORE"] = store
    app.config["DOWNLOADER"] = playlist_downloader

    @app.route("/getm3u", methods=["GET"])
    def getm3u() -> Any:
        logger.info(
            "M3U request started: method=%s url=%s ip=%s",
            request.method,
            request.full_path,
            request.remote_addr,
        )
        try:
            result = handle_getm3u(request.args, store, playlist_downloader)
        except ValidationError as exc:
            logger.info("Rejected M3U request: %s", exc)
            return _error_response(str(exc), 400)
        except ProfileNotFoundError as exc:
            logger.info("Rejected M3U request: %s", exc)
            return _error_response(str(exc), 404)
        except UpstreamError as exc:
            logger.error("M3U upstream failure: %s", exc)
            return _error_response("Failed to fetch remote playlist", 502)
        except Exception:  # pragma: no cover - protective logging only
            logger.exception("M3U handler failed")
            return _error_response("Internal server error", 500)

        return Response(result.body.encode("utf-8"), status=200, headers=result.headers)

    @app.route("/health", methods=["GET"])
    def health() -> Any:
        return jsonify(
            {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}
        )

    @app.errorhandler(404)
    def not_found(_error: Exception) -> Any:
        return _error_response("Endpoint not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(_error: Exception) -> Any:
        return _error_response("Method not allowed", 405)

    return app


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve filtered M3U playlists.")
    parser.add_argument("--config", help="Path to the YAML/JSON config file.")
    parser.add_argument("--host", help="Interface to bind (default: %s)." % DEFAULT_HOST)
    parser.add_argument("--port", type=int, help="Port to listen on (default: %d)." % DEFAULT_PORT)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Minimum log severity.",
    )
    return parser.parse_args(argv)


def resolve_server_settings(args: argparse.Namespace, config_store: ConfigStore) -> Dict[str, Any]:
    """Merge CLI flags, environment variables and config values (in that order)."""

    server_cfg = config_store.section("server")
    logging_cfg = config_store.section("logging")

    host = args.host or server_cfg.get("host") or DEFAULT_HOST
    port = (
        args.port
        or _coerce_positive_int(os.environ.get("PORT"))
        or _coerce_positive_int(server_cfg.get("port"))
        or DEFAULT_PORT
    )
    log_level = (
        args.log_level
        or os.environ.get("LOG_LEVEL")
        or logging_cfg.get("level")
        or DEFAULT_LOG_LEVEL
    )

    config_dir = config_store.path.parent
    runtime_dir = _resolve_runtime_dir(config_dir).resolve()
    log_file: Optional[Path] = None
    if logging_cfg.get("file") is not False:
        log_file = _resolve_path_setting(
            logging_cfg.get("file"), runtime_dir / DEFAULT_LOG_FILE, config_dir
        )

    return {
        "host": str(host),
        "port": int(port),
        "log_level": str(log_level).upper(),
        "log_file": log_file,
    }


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).expanduser() if args.config else resolve_config_path()
    config_store = ConfigStore(config_path)

    settings = resolve_server_settings(args, config_store)
    setup_logging(settings["log_level"], settings["log_file"])

    app = create_app(config_store)
    logger.info("M3U filter server started on %s:%d", settings["host"], settings["port"])
    app.run(host=settings["host"], port=settings["port"], threaded=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
