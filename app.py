import sys
import logging
import argparse
from typing import Optional, Sequence

from dotenv import load_dotenv

from api import create_app
from config import ConfigurationError, Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(settings: Settings):
    """Console logging plus an optional log file"""
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    # Suppress overly verbose logs from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="YouTube metadata and download API",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Run Flask in debug mode")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    load_dotenv()

    try:
        settings = Settings.from_env()
        configure_logging(settings)
        app = create_app(settings)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.error(f"Configuration error: {e}")
        return 1

    logger.info(f"Metadata source: {settings.metadata_source}")
    app.run(host=args.host, port=args.port, debug=args.debug, threaded=True)
    return 0


if __name__ == '__main__':
    sys.exit(main())
