"""TLS certificate management for the OTA server.

Provides self-signed certificate generation for development mode, with
fingerprint output for TOFU (trust-on-first-use) verification. A generated
pair is kept under the certificate directory and reused on later runs.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import CommandRunner, run_command

logger = logging.getLogger(__name__)

# Certificate defaults
DEFAULT_CERT_DAYS = 365
DEFAULT_KEY_SIZE = 4096
DEV_HOSTNAME = "localhost"
CERT_FILENAME = "server.crt"
KEY_FILENAME = "server.key"


@dataclass(frozen=True)
class CertificateBundle:
    """Certificate and key locations for the listener.

    exists is False when provisioning failed; callers check it before
    using the paths.
    """

    cert_path: Path
    key_path: Path
    exists: bool

    @classmethod
    def at(cls, cert_dir: Path) -> "CertificateBundle":
        """Describe the fixed server.crt / server.key pair in cert_dir."""
        cert_path = cert_dir / CERT_FILENAME
        key_path = cert_dir / KEY_FILENAME
        return cls(
            cert_path=cert_path,
            key_path=key_path,
            exists=cert_path.is_file() and key_path.is_file(),
        )


def get_cert_fingerprint(cert_path: Path, runner: CommandRunner = run_command) -> Optional[str]:
    """Get SHA256 fingerprint of a certificate.

    Args:
        cert_path: Path to PEM certificate file
        runner: Command runner

    Returns:
        SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:..."),
        or None if openssl fails
    """
    rc, out, err = runner([
        "openssl", "x509",
        "-in", str(cert_path),
        "-noout",
        "-fingerprint",
        "-sha256",
    ])
    if rc != 0:
        logger.debug("Could not read fingerprint of %s: %s", cert_path, err.strip())
        return None
    # Output format: "sha256 Fingerprint=AB:CD:EF:..."
    output = out.strip()
    if "=" in output:
        return output.split("=", 1)[1]
    return output


def _openssl_config(hostname: str, key_size: int) -> str:
    return f"""
[req]
default_bits = {key_size}
prompt = no
default_md = sha256
distinguished_name = dn
x509_extensions = v3_ext

[dn]
CN = {hostname}

[v3_ext]
basicConstraints = CA:FALSE
keyUsage = digitalSignature, keyEncipherment
extendedKeyUsage = serverAuth
subjectAltName = DNS:{hostname}
"""


def generate_self_signed_cert(
    cert_dir: Path,
    hostname: str = DEV_HOSTNAME,
    days: int = DEFAULT_CERT_DAYS,
    key_size: int = DEFAULT_KEY_SIZE,
    runner: CommandRunner = run_command,
) -> CertificateBundle:
    """Generate (or reuse) a self-signed certificate for development.

    Creates a certificate with:
    - CN = SAN = hostname (localhost)
    - RSA key, 4096 bits by default
    - Validity = 365 days

    If both server.crt and server.key already exist they are returned as-is
    and nothing is generated.

    Failures (openssl missing, unwritable directory) do not raise; the
    returned bundle has exists=False instead.

    Args:
        cert_dir: Directory for server.crt / server.key
        hostname: Certificate common name
        days: Certificate validity in days
        key_size: RSA key size in bits
        runner: Command runner used to invoke openssl

    Returns:
        CertificateBundle for the pair
    """
    existing = CertificateBundle.at(cert_dir)
    if existing.exists:
        logger.info("Using existing certificate: %s", existing.cert_path)
        return existing

    logger.info("Generating self-signed certificate for %s", hostname)

    config_path = None
    try:
        cert_dir.mkdir(parents=True, exist_ok=True)

        # Temporary config file for openssl
        with tempfile.NamedTemporaryFile(mode="w", suffix=".cnf", delete=False) as f:
            f.write(_openssl_config(hostname, key_size))
            config_path = f.name

        rc, _, err = runner([
            "openssl", "req",
            "-x509",
            "-nodes",
            "-newkey", f"rsa:{key_size}",
            "-keyout", str(existing.key_path),
            "-out", str(existing.cert_path),
            "-days", str(days),
            "-config", config_path,
        ])
        if rc != 0:
            logger.error("Failed to generate self-signed certificate: %s", err.strip())
            return CertificateBundle(existing.cert_path, existing.key_path, exists=False)

        # Set restrictive permissions on key file
        os.chmod(existing.key_path, 0o600)
        os.chmod(existing.cert_path, 0o644)
    except OSError as e:
        logger.error("Failed to generate self-signed certificate: %s", e)
        return CertificateBundle(existing.cert_path, existing.key_path, exists=False)
    finally:
        if config_path:
            Path(config_path).unlink(missing_ok=True)

    bundle = CertificateBundle.at(cert_dir)
    if bundle.exists:
        fingerprint = get_cert_fingerprint(bundle.cert_path, runner=runner)
        if fingerprint:
            logger.info("Certificate fingerprint (SHA256): %s", fingerprint)
    return bundle
