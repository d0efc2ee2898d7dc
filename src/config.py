"""OTA host configuration.

Configuration comes from three layers, highest precedence first:
- command-line flags (see cli.py)
- an optional YAML settings file (ota.yaml, $OTA_HOST_CONFIG or --config)
- built-in defaults

The result is a frozen ServerConfig built once per run. Port and IPA path
validation happens before any filesystem or network work is done.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

IPA_EXTENSION = '.ipa'

DEFAULT_PROD_PORT = 443
DEFAULT_DEV_PORT = 8443
DEFAULT_BIND = '0.0.0.0'
DEFAULT_HOSTNAME = 'localhost'
DEFAULT_GRACE_DELAY = 1.0
DEFAULT_CONFIG_FILE = 'ota.yaml'
CONFIG_ENV_VAR = 'OTA_HOST_CONFIG'

# Default location of external manifest/install-page templates
DEFAULT_TEMPLATES_DIR = Path(__file__).resolve().parent / 'server' / 'templates'

# Keys accepted in the YAML settings file
FILE_KEYS = ('port', 'bind', 'use_https', 'work_dir', 'dist_dir', 'templates_dir', 'grace_delay')


class ConfigError(Exception):
    """Configuration file error."""


class ValidationError(Exception):
    """Invalid command-line or configuration value."""


def validate_port(port: Any) -> int:
    """Validate a TCP port number.

    Raises:
        ValidationError: If port is not an integer in 1-65535
    """
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValidationError(f"Port must be an integer, got {port!r}")
    if port < 1 or port > 65535:
        raise ValidationError(f"Port must be between 1 and 65535, got {port}")
    return port


def validate_ipa_path(path: Path) -> Path:
    """Validate an explicitly selected IPA file.

    Raises:
        ValidationError: If the file is missing or is not an .ipa
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Custom IPA file not found: {path}")
    if not path.is_file():
        raise ValidationError(f"Custom IPA path is not a file: {path}")
    if path.suffix.lower() != IPA_EXTENSION:
        raise ValidationError(f"Custom file must have {IPA_EXTENSION} extension: {path}")
    return path.resolve()


def load_config_file(path: Optional[Path] = None) -> dict:
    """Load the YAML settings file.

    Resolution order:
    1. path argument (--config)
    2. OTA_HOST_CONFIG environment variable
    3. ota.yaml in the current directory (optional)

    Returns:
        Dict of recognised settings (empty if no file is in use)

    Raises:
        ConfigError: If an explicitly named file is missing, or any file
            cannot be parsed or is not a mapping
    """
    explicit = True
    if path is None and os.environ.get(CONFIG_ENV_VAR):
        path = Path(os.environ[CONFIG_ENV_VAR])
    if path is None:
        path = Path.cwd() / DEFAULT_CONFIG_FILE
        explicit = False

    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return {}

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")

    for key in data:
        if key not in FILE_KEYS:
            logger.warning("Ignoring unknown config key '%s' in %s", key, path)

    logger.debug("Loaded settings from %s", path)
    return {k: v for k, v in data.items() if k in FILE_KEYS}


@dataclass(frozen=True)
class ServerConfig:
    """Operating parameters for one server run."""

    port: int
    dev_mode: bool = False
    ipa_path: Optional[Path] = None
    hostname: str = DEFAULT_HOSTNAME
    use_https: bool = True
    serve_once: bool = False
    work_dir: Path = field(default_factory=Path.cwd)
    dist_dir: Optional[Path] = None
    templates_dir: Path = DEFAULT_TEMPLATES_DIR
    bind: str = DEFAULT_BIND
    grace_delay: float = DEFAULT_GRACE_DELAY

    def __post_init__(self):
        validate_port(self.port)
        if self.grace_delay < 0:
            raise ValidationError(f"grace_delay must not be negative, got {self.grace_delay}")
        # Frozen dataclass: normalise paths through object.__setattr__
        object.__setattr__(self, 'work_dir', Path(self.work_dir))
        object.__setattr__(self, 'templates_dir', Path(self.templates_dir))
        if self.dist_dir is None:
            object.__setattr__(self, 'dist_dir', self.work_dir / 'dist' / 'ota')
        else:
            object.__setattr__(self, 'dist_dir', Path(self.dist_dir))
        if self.ipa_path is not None:
            object.__setattr__(self, 'ipa_path', Path(self.ipa_path))

    @property
    def cert_dir(self) -> Path:
        """Directory holding server.crt / server.key."""
        return self.dist_dir / 'certs'

    @property
    def protocol(self) -> str:
        return 'https' if self.use_https else 'http'

    @classmethod
    def from_options(
        cls,
        dev: bool = False,
        port: Optional[int] = None,
        ipa: Optional[Path] = None,
        once: bool = False,
        http: bool = False,
        work_dir: Optional[Path] = None,
        dist_dir: Optional[Path] = None,
        settings: Optional[dict] = None,
    ) -> 'ServerConfig':
        """Build a config from command-line options and file settings.

        Command-line values win over settings; the port default depends on
        the mode (443 production, 8443 development).

        Raises:
            ValidationError: On invalid port, IPA path or settings values
        """
        settings = settings or {}

        # Validate explicit flags first so bad input aborts before any I/O
        if port is not None:
            validate_port(port)
        ipa_path = validate_ipa_path(ipa) if ipa is not None else None

        if port is None:
            port = settings.get('port', DEFAULT_DEV_PORT if dev else DEFAULT_PROD_PORT)

        use_https = settings.get('use_https', True)
        if not isinstance(use_https, bool):
            raise ValidationError(f"use_https must be true or false: {use_https!r}")
        use_https = use_https and not http

        kwargs: dict[str, Any] = {}
        if work_dir is not None or 'work_dir' in settings:
            kwargs['work_dir'] = Path(work_dir or settings['work_dir'])
        if dist_dir is not None or 'dist_dir' in settings:
            kwargs['dist_dir'] = Path(dist_dir or settings['dist_dir'])
        if 'templates_dir' in settings:
            kwargs['templates_dir'] = Path(settings['templates_dir'])
        if 'bind' in settings:
            kwargs['bind'] = str(settings['bind'])
        if 'grace_delay' in settings:
            try:
                kwargs['grace_delay'] = float(settings['grace_delay'])
            except (TypeError, ValueError) as e:
                raise ValidationError(f"grace_delay must be a number: {settings['grace_delay']!r}") from e

        return cls(
            port=port,
            dev_mode=dev,
            ipa_path=ipa_path,
            use_https=use_https,
            serve_once=once,
            **kwargs,
        )
