"""Launch the AskBot relay under uvicorn.

Host, port and log level default to the ``server`` and ``logging`` sections
of the config; command-line flags win. With ``--reload`` or more than one
worker uvicorn needs an import string, so the app is then built through the
``askbot.server:create_app`` factory in each worker and the config path is
handed over via ``ASKBOT_CONFIG``.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from askbot.config import configure_logging, load_config  # noqa: E402
from askbot.server import create_app  # noqa: E402

logger = logging.getLogger("askbot.run_server")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the AskBot relay.")
    parser.add_argument("--config", default=None, help="YAML config (default: $ASKBOT_CONFIG or config/default.yaml)")
    parser.add_argument("--host", default=None, help="Bind address (default: server.host, then 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: $PORT, then server.port, then 10000)")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development only)")
    parser.add_argument("--workers", type=int, default=int(os.environ.get("WORKERS", "1")),
                        help="Worker processes; each keeps its own conversation history")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    cfg = load_config(args.config)
    configure_logging(cfg)
    server_cfg = cfg.get("server", {})

    host = args.host or server_cfg.get("host") or "0.0.0.0"
    port = args.port or int(os.environ.get("PORT") or server_cfg.get("port") or 10000)
    log_level = str(cfg.get("logging", {}).get("level", "info")).lower()

    if args.workers > 1:
        logger.warning("Running %d workers: conversation history is not shared between them", args.workers)

    logger.info("AskBot relay starting on %s:%s", host, port)
    if args.reload or args.workers > 1:
        if args.config:
            os.environ["ASKBOT_CONFIG"] = args.config
        uvicorn.run(
            "askbot.server:create_app",
            factory=True,
            host=host,
            port=port,
            reload=args.reload,
            workers=args.workers,
            log_level=log_level,
        )
        return

    uvicorn.run(create_app(args.config), host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    main()
