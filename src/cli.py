#!/usr/bin/env python3
"""CLI entry point for ota-host.

Serves the newest .ipa in the working directory for iOS over-the-air
installation:
- Production: ota-host          (Tailscale hostname + certificate, port 443)
- Development: ota-host --dev   (localhost, self-signed certificate, port 8443)
- Single download: ota-host --once (exit after the IPA has been served)
"""

import argparse
import logging
import sys
from pathlib import Path

from config import ConfigError, ServerConfig, ValidationError, load_config_file, validate_port
from server.httpd import OTAServer, StartupError
from server.provision import ProvisionError

logger = logging.getLogger(__name__)

EPILOG = """examples:
  ota-host                    production mode
  ota-host --dev              development mode
  ota-host --port 9000        custom port
  ota-host --ipa app.ipa      specific IPA file
  ota-host --once             exit after first IPA served
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ota-host",
        description="OTA Host - iOS App Over-The-Air Distribution",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Development mode (self-signed certs, localhost)",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        help="Server port (default: 443 prod, 8443 dev)",
    )
    parser.add_argument(
        "--ipa",
        type=Path,
        help="Use specific IPA file",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Exit after serving the first IPA file",
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Serve plain HTTP (iOS only installs over HTTPS)",
    )
    parser.add_argument(
        "--dir",
        type=Path,
        help="Directory to scan for IPA files (default: current directory)",
    )
    parser.add_argument(
        "--dist-dir",
        type=Path,
        help="Output directory for manifest, install page and certs (default: <dir>/dist/ota)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML settings file (default: $OTA_HOST_CONFIG or ./ota.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def build_config(args: argparse.Namespace) -> ServerConfig:
    """Turn parsed arguments into a ServerConfig.

    Raises:
        ValidationError: On invalid port or IPA path
        ConfigError: On an unreadable settings file
    """
    # Command-line values are checked before the settings file is read
    if args.port is not None:
        validate_port(args.port)
    settings = load_config_file(args.config)

    return ServerConfig.from_options(
        dev=args.dev,
        port=args.port,
        ipa=args.ipa,
        once=args.once,
        http=args.http,
        work_dir=args.dir,
        dist_dir=args.dist_dir,
        settings=settings,
    )


def main(argv=None):
    """CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    args = build_parser().parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = build_config(args)
        server = OTAServer(config)
        server.prepare()
        server.start()
    except (ValidationError, ConfigError, ProvisionError, StartupError) as e:
        logger.error("Fatal error: %s", e)
        return 1

    return server.serve_forever()


if __name__ == "__main__":
    sys.exit(main())
