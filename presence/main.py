import argparse
import logging
import sys

from presence.core.config import Config, Settings
from presence.core.errors import ConfigurationError

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'


def setup_basic_logging():
    """Setup basic stdout logging before config is loaded"""
    root_logger = logging.getLogger()
    if not root_logger.handlers:  # Only add handler if none exists
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.DEBUG)
        logging.debug("Basic logging initialized")


def configure_logging(settings: Settings) -> None:
    """Apply the configured level and optional log file."""
    root_logger = logging.getLogger()
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)
    root_logger.setLevel(level)
    if settings.logging.file:
        file_handler = logging.FileHandler(settings.logging.file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)
    logging.info(f"Logging configured: level={settings.logging.level}, file={settings.logging.file}")


def main(argv=None) -> int:
    setup_basic_logging()

    parser = argparse.ArgumentParser(description='Presence Data API')
    parser.add_argument('--config', help='Path to config file (default: ./config.yaml)')
    parser.add_argument('--host', help='Override api.host')
    parser.add_argument('--port', type=int, help='Override api.port')
    args = parser.parse_args(argv)

    try:
        config = Config(args.config)
        if args.host:
            config.data.setdefault("api", {})["host"] = args.host
        if args.port:
            config.data.setdefault("api", {})["port"] = args.port
        settings = config.to_settings()
    except ConfigurationError as e:
        logging.error(f"Not configured: {e}")
        return 1

    configure_logging(settings)

    from presence.api import run_api_server
    run_api_server(settings)
    return 0


if __name__ == "__main__":
    sys.exit(main())
