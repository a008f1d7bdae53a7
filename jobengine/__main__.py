"""
Run the job engine: python -m jobengine
"""

import argparse

import uvicorn

from . import config
from .logging_config import setup_logging
from .main import create_app


def main(argv=None):
    parser = argparse.ArgumentParser(prog="jobengine", description="Supervised job execution service")
    parser.add_argument("--host", default=config.APP_HOST)
    parser.add_argument("--port", type=int, default=config.APP_PORT)
    parser.add_argument("--log-config", default="LOGGING.yaml", help="YAML logging config, if present")
    args = parser.parse_args(argv)

    setup_logging(args.log_config)
    uvicorn.run(create_app(configure_logging=False), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
