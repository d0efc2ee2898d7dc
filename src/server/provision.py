"""Hostname and certificate provisioning.

Development mode serves on localhost with a reusable self-signed pair.
Production mode serves on the node's Tailscale name with a Tailscale-issued
certificate.
"""

import logging

from common import CommandRunner, run_command
from config import ServerConfig
from server.tailscale import fetch_tailscale_cert, get_tailscale_status
from server.tls import DEV_HOSTNAME, CertificateBundle, generate_self_signed_cert

logger = logging.getLogger(__name__)


class ProvisionError(Exception):
    """Serving hostname could not be determined."""


def provision(
    config: ServerConfig,
    runner: CommandRunner = run_command,
) -> tuple[str, CertificateBundle]:
    """Resolve the serving hostname and its certificate bundle.

    A bundle with exists=False is returned, not raised; whether that is
    fatal depends on config.use_https and is decided by the caller.

    Args:
        config: Server configuration (dev_mode selects the mode)
        runner: Command runner for openssl / tailscale

    Returns:
        (hostname, CertificateBundle)

    Raises:
        ProvisionError: Production mode and Tailscale is not running or has
            no resolvable hostname
    """
    if config.dev_mode:
        return DEV_HOSTNAME, generate_self_signed_cert(config.cert_dir, hostname=DEV_HOSTNAME, runner=runner)

    status = get_tailscale_status(runner=runner)
    if not status.is_running or not status.hostname:
        raise ProvisionError("Tailscale is not running or hostname not available")

    logger.info("Tailscale hostname: %s", status.hostname)
    return status.hostname, fetch_tailscale_cert(status.hostname, config.cert_dir, runner=runner)
