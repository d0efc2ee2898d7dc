"""Server package for OTA distribution.

Serves the install page, the itms-services manifest and the newest IPA on a
single HTTP(S) port, with TLS from a self-signed pair (development) or
Tailscale (production).
"""

from server.httpd import (
    OTAServer,
    ShutdownSignal,
    StartupError,
    IPA_ROUTE,
)
from server.provision import (
    ProvisionError,
    provision,
)
from server.render import (
    ManifestData,
    build_install_url,
    format_file_size,
    generate_install_page,
    generate_manifest,
)
from server.tailscale import (
    TailscaleStatus,
    fetch_tailscale_cert,
    get_tailscale_status,
)
from server.tls import (
    CertificateBundle,
    generate_self_signed_cert,
    get_cert_fingerprint,
)

__all__ = [
    # Server
    "OTAServer",
    "ShutdownSignal",
    "StartupError",
    "IPA_ROUTE",
    # Provisioning
    "ProvisionError",
    "provision",
    # Rendering
    "ManifestData",
    "build_install_url",
    "format_file_size",
    "generate_install_page",
    "generate_manifest",
    # Tailscale
    "TailscaleStatus",
    "fetch_tailscale_cert",
    "get_tailscale_status",
    # TLS
    "CertificateBundle",
    "generate_self_signed_cert",
    "get_cert_fingerprint",
]
