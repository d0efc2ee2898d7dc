"""Tailscale integration.

Production mode serves on the node's MagicDNS name with a certificate
issued by Tailscale. Both the status query and the certificate request go
through the tailscale CLI.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import CommandRunner, run_command
from server.tls import CertificateBundle

logger = logging.getLogger(__name__)

TAILNET_DOMAIN = ".ts.net"


@dataclass(frozen=True)
class TailscaleStatus:
    """Network identity of the current node."""

    is_running: bool
    hostname: Optional[str] = None
    machine_name: Optional[str] = None
    tailnet_name: Optional[str] = None


def parse_status(status: dict) -> TailscaleStatus:
    """Build TailscaleStatus from `tailscale status --json` output.

    The fully-qualified name is <machine>.<tailnet>.ts.net, from Self.HostName
    and MagicDNSSuffix. hostname is None when either part is missing.
    """
    backend_state = status.get("BackendState")
    if backend_state is not None and backend_state != "Running":
        logger.debug("Tailscale backend state: %s", backend_state)
        return TailscaleStatus(is_running=False)

    self_node = status.get("Self")
    if not self_node:
        return TailscaleStatus(is_running=False)

    machine_name = self_node.get("HostName") or None
    suffix = (status.get("MagicDNSSuffix") or "").rstrip(".")
    tailnet_name = suffix[:-len(TAILNET_DOMAIN)] if suffix.endswith(TAILNET_DOMAIN) else suffix

    hostname = None
    if machine_name and tailnet_name:
        hostname = f"{machine_name}.{tailnet_name}{TAILNET_DOMAIN}"

    return TailscaleStatus(
        is_running=True,
        hostname=hostname,
        machine_name=machine_name,
        tailnet_name=tailnet_name or None,
    )


def get_tailscale_status(runner: CommandRunner = run_command) -> TailscaleStatus:
    """Query the local tailscale daemon.

    Returns:
        TailscaleStatus; is_running=False if the CLI is missing, fails, or
        reports the node as not running
    """
    logger.debug("Checking Tailscale status...")
    rc, out, err = runner(["tailscale", "status", "--json"])
    if rc != 0:
        logger.warning("Tailscale not available: %s", err.strip() or f"exit code {rc}")
        return TailscaleStatus(is_running=False)

    try:
        status = json.loads(out)
    except json.JSONDecodeError as e:
        logger.warning("Tailscale returned invalid status JSON: %s", e)
        return TailscaleStatus(is_running=False)

    if not isinstance(status, dict):
        logger.warning("Tailscale returned unexpected status: %r", status)
        return TailscaleStatus(is_running=False)

    return parse_status(status)


def fetch_tailscale_cert(
    hostname: str,
    cert_dir: Path,
    runner: CommandRunner = run_command,
) -> CertificateBundle:
    """Request a certificate for hostname from Tailscale.

    Failures are logged and reported as exists=False rather than raised.

    Args:
        hostname: Fully-qualified MagicDNS name
        cert_dir: Directory for server.crt / server.key
        runner: Command runner used to invoke tailscale

    Returns:
        CertificateBundle for the issued pair
    """
    target = CertificateBundle.at(cert_dir)
    logger.info("Fetching Tailscale TLS certificates for %s...", hostname)

    try:
        cert_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Failed to fetch Tailscale certificates: %s", e)
        return CertificateBundle(target.cert_path, target.key_path, exists=False)

    rc, _, err = runner([
        "tailscale", "cert",
        "--cert-file", str(target.cert_path),
        "--key-file", str(target.key_path),
        hostname,
    ])
    if rc != 0:
        logger.error("Failed to fetch Tailscale certificates: %s", err.strip() or f"exit code {rc}")
        return CertificateBundle(target.cert_path, target.key_path, exists=False)

    return CertificateBundle.at(cert_dir)
