"""
Command-line entry point: load the config, build the app and run uvicorn.
"""

import argparse
import logging

import uvicorn

from vlm_caption_serving.config import load_config
from vlm_caption_serving.serving.api import create_app

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Serve BLIP image captions over HTTP and WebSocket")
    parser.add_argument("--config", type=str, default=None, help="Path to service YAML config")
    parser.add_argument("--host", type=str, default=None, help="Bind address (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (overrides config)")
    parser.add_argument("--device", type=str, default=None, help="auto, cpu, cuda or mps (overrides config)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config = load_config(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.device:
        config.device = args.device

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Starting caption server on %s:%d", config.host, config.port)
    uvicorn.run(create_app(config=config), host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
