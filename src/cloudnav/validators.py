"""Configuration validators for cloudnav."""

import logging
from pathlib import Path
from typing import Any, List

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


class ConfigValidator:
    """Base class for configuration validators."""

    def validate(self, value: Any) -> Any:
        """Validate and normalize a configuration value.

        Args:
            value: Raw configuration value

        Returns:
            Validated and normalized value

        Raises:
            ValidationError: If validation fails
        """
        raise NotImplementedError


class DownloadDirectoryValidator(ConfigValidator):
    """Validates the download directory, creating it when missing."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, (str, Path)):
            raise ValidationError(f"Download directory must be a string or Path, got: {type(value)}")

        path = Path(value).expanduser().resolve()

        if not path.parent.exists():
            raise ValidationError(
                f"Parent directory does not exist: {path.parent}"
            )

        if not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created download directory: {path}")
            except OSError as e:
                raise ValidationError(
                    f"Failed to create download directory {path}: {e}"
                )

        if not path.is_dir():
            raise ValidationError(
                f"Download directory path exists but is not a directory: {path}"
            )

        return str(path)


class LogLevelValidator(ConfigValidator):
    """Validates log level."""

    VALID_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Log level must be a string, got: {type(value)}")

        level = value.upper()

        if level not in self.VALID_LEVELS:
            raise ValidationError(
                f"Invalid log level: {value}. Must be one of: {', '.join(sorted(self.VALID_LEVELS))}"
            )

        return level


class AppKeyValidator(ConfigValidator):
    """Validates an OAuth app key or secret (non-empty, no whitespace)."""

    def __init__(self, name: str):
        self.name = name

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"{self.name} must be a string, got: {type(value)}")

        key = value.strip()

        if not key:
            raise ValidationError(f"{self.name} cannot be empty")

        if any(c.isspace() for c in key):
            raise ValidationError(f"{self.name} must not contain whitespace")

        return key


class RedirectAddressesValidator(ConfigValidator):
    """Validates redirect addresses: a list or comma separated ``host:port`` string."""

    def validate(self, value: Any) -> List[str]:
        if isinstance(value, str):
            value = [part for part in value.split(',')]

        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"Redirect addresses must be a list, got: {type(value)}")

        addresses = []
        for raw in value:
            if not isinstance(raw, str):
                raise ValidationError(f"Redirect address must be a string, got: {type(raw)}")
            address = raw.strip()
            if not address:
                continue
            host, sep, port = address.rpartition(':')
            if not sep or not host:
                raise ValidationError(f"Redirect address must be host:port, got: {address}")
            try:
                port_number = int(port)
            except ValueError:
                raise ValidationError(f"Invalid port in redirect address: {address}")
            if not 0 <= port_number <= 65535:
                raise ValidationError(f"Port out of range in redirect address: {address}")
            addresses.append(address)

        if not addresses:
            raise ValidationError("At least one redirect address is required")

        return addresses


class StringValidator(ConfigValidator):
    """Validates string values with optional constraints."""

    def __init__(self, min_length: int = 0, max_length: int = None, allow_empty: bool = True):
        self.min_length = min_length
        self.max_length = max_length
        self.allow_empty = allow_empty

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Must be a string, got: {type(value)}")

        if not self.allow_empty and not value.strip():
            raise ValidationError("Cannot be empty")

        if len(value) < self.min_length:
            raise ValidationError(
                f"Must be at least {self.min_length} characters, got: {len(value)}"
            )

        if self.max_length is not None and len(value) > self.max_length:
            raise ValidationError(
                f"Must be at most {self.max_length} characters, got: {len(value)}"
            )

        return value


# Registry of validators for top-level config keys
VALIDATORS = {
    'log_level': LogLevelValidator(),
}

# Registry of validators for keys of a storage entry
STORAGE_VALIDATORS = {
    'caption': StringValidator(max_length=100, allow_empty=False),
    'type': StringValidator(allow_empty=False),
    'client_id': AppKeyValidator('Client ID'),
    'client_secret': AppKeyValidator('Client secret'),
    'redirect_addresses': RedirectAddressesValidator(),
    'download_to': DownloadDirectoryValidator(),
    'current_path': StringValidator(),
}


def validate_config_value(key: str, value: Any) -> Any:
    """Validate a configuration value using registered validators.

    Args:
        key: Configuration key
        value: Value to validate

    Returns:
        Validated and normalized value

    Raises:
        ValidationError: If validation fails
    """
    if key in VALIDATORS:
        return VALIDATORS[key].validate(value)

    # Unknown keys pass through unchanged
    return value


def validate_storage_value(key: str, value: Any) -> Any:
    """Validate a value of a storage entry.

    Raises:
        ValidationError: If the key is unknown or validation fails
    """
    if key not in STORAGE_VALIDATORS:
        raise ValidationError(
            f"Unknown storage setting: {key}. Must be one of: {', '.join(sorted(STORAGE_VALIDATORS))}"
        )
    return STORAGE_VALIDATORS[key].validate(value)
