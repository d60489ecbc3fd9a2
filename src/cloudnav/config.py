#!/usr/bin/env python3
"""Configuration management for cloudnav.

config.json contains:

{
  "log_level": "INFO",
  "storages": [
    {
      "id": "dropbox",                  // Unique storage identifier
      "caption": "My Dropbox",          // Name shown in the UI
      "type": "dropbox",                // Provider implementation
      "client_id": "abc123",            // OAuth app key
      "client_secret": "xyz789",        // OAuth app secret
      "redirect_addresses": [           // Tried in order for the sign-in listener
        "127.0.0.1:8080",
        "127.0.0.1:8081"
      ],
      "current_path": "Photos",         // Last browsed folder ("" is the root)
      "download_to": "/home/me/Downloads"
    }
  ]
}

Tokens are kept apart from config.json in an encrypted .tokens file
mapping storage id to {"access_token", "refresh_token"}. The encryption
key lives in the system keyring.
"""

import base64
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .validators import ValidationError, validate_config_value, validate_storage_value

logger = logging.getLogger(__name__)


class Config:
    """Manages cloudnav configuration."""

    DEFAULT_CONFIG_DIR = Path.home() / ".config" / "cloudnav"
    DEFAULT_DOWNLOAD_DIR = Path.home() / "Downloads"
    DEFAULT_REDIRECT_ADDRESSES = ["127.0.0.1:8080", "127.0.0.1:8081", "127.0.0.1:8082"]
    CONFIG_FILE = "config.json"
    TOKEN_FILE = ".tokens"
    LOG_FILE = "cloudnav.log"
    KEYRING_SERVICE = "cloudnav"

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Custom configuration directory path
        """
        self.config_dir = config_dir or self.DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_path = self.config_dir / self.CONFIG_FILE
        self.token_path = self.config_dir / self.TOKEN_FILE
        self.log_path = self.config_dir / self.LOG_FILE

        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file."""
        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                self._config = json.load(f)
            self._config.setdefault('storages', [])
            logger.debug(f"Loaded config from {self.config_path}")
        else:
            self._config = {
                'log_level': 'INFO',
                'storages': [],
            }
            self.save()
            logger.debug(f"Created default config at {self.config_path}")

    def save(self) -> None:
        """Save configuration to file."""
        with open(self.config_path, 'w') as f:
            json.dump(self._config, f, indent=2)
        # Secure file permissions (owner read/write only)
        self.config_path.chmod(0o600)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value with validation.

        Args:
            key: Configuration key
            value: Configuration value

        Raises:
            ValueError: If value is invalid for the given key
        """
        try:
            validated_value = validate_config_value(key, value)
        except ValidationError as e:
            raise ValueError(str(e))
        self._config[key] = validated_value
        self.save()

    @property
    def log_level(self) -> str:
        """Get log level."""
        return self._config.get('log_level', 'INFO').upper()

    @property
    def storages(self) -> List[Dict[str, Any]]:
        """Get configured storages with defaults filled in."""
        return [self._with_defaults(s) for s in self._config.get('storages', [])]

    def _with_defaults(self, storage: Dict[str, Any]) -> Dict[str, Any]:
        merged = {
            'caption': storage.get('id', ''),
            'type': 'dropbox',
            'client_id': '',
            'client_secret': '',
            'redirect_addresses': list(self.DEFAULT_REDIRECT_ADDRESSES),
            'current_path': '',
            'download_to': str(self.DEFAULT_DOWNLOAD_DIR),
        }
        merged.update(storage)
        return merged

    def storage(self, storage_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Find a storage by id.

        Args:
            storage_id: Storage identifier, or None for the first storage

        Returns:
            Storage settings or None if not configured
        """
        for storage in self.storages:
            if storage_id is None or storage['id'] == storage_id:
                return storage
        return None

    def add_storage(self, storage_id: str, **settings: Any) -> Dict[str, Any]:
        """Add a storage entry.

        Raises:
            ValueError: If the id is taken or a setting is invalid
        """
        if not storage_id or self.storage(storage_id) is not None:
            raise ValueError(f"Storage id already in use or empty: {storage_id!r}")

        entry: Dict[str, Any] = {'id': storage_id}
        for key, value in settings.items():
            try:
                entry[key] = validate_storage_value(key, value)
            except ValidationError as e:
                raise ValueError(str(e))
        self._config['storages'].append(entry)
        self.save()
        logger.info(f"Added storage {storage_id}")
        return self._with_defaults(entry)

    def set_storage_value(self, storage_id: str, key: str, value: Any) -> None:
        """Set a validated value of a storage entry.

        Raises:
            ValueError: If the storage is unknown or the value is invalid
        """
        try:
            validated_value = validate_storage_value(key, value)
        except ValidationError as e:
            raise ValueError(str(e))

        for entry in self._config['storages']:
            if entry.get('id') == storage_id:
                entry[key] = validated_value
                self.save()
                return
        raise ValueError(f"Unknown storage: {storage_id}")

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key from system keyring.

        Returns:
            Encryption key bytes
        """
        key_name = "token_encryption_key"

        key_str = keyring.get_password(self.KEYRING_SERVICE, key_name)

        if key_str:
            return base64.b64decode(key_str.encode())

        key = Fernet.generate_key()

        key_str = base64.b64encode(key).decode()
        keyring.set_password(self.KEYRING_SERVICE, key_name, key_str)

        logger.info("Generated new encryption key")
        return key

    def _encrypt_tokens(self, token_data: Dict[str, Any]) -> bytes:
        fernet = Fernet(self._get_encryption_key())
        return fernet.encrypt(json.dumps(token_data).encode())

    def _decrypt_tokens(self, encrypted_data: bytes) -> Dict[str, Any]:
        """Decrypt token data.

        Raises:
            ValueError: If decryption fails
        """
        try:
            fernet = Fernet(self._get_encryption_key())
            return json.loads(fernet.decrypt(encrypted_data).decode())
        except InvalidToken:
            raise ValueError("Invalid or corrupted token data")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Decryption failed: {e}")

    def _load_all_tokens(self) -> Dict[str, Dict[str, str]]:
        if not self.token_path.exists():
            return {}

        try:
            return self._decrypt_tokens(self.token_path.read_bytes())
        except ValueError as e:
            logger.warning(f"Could not decrypt tokens: {e}")
            logger.warning("Discarding token file - please sign in again")
            self.token_path.unlink(missing_ok=True)
            return {}

    def save_tokens(self, storage_id: str, access_token: str, refresh_token: str) -> None:
        """Save the encrypted token pair of a storage.

        Args:
            storage_id: Storage identifier
            access_token: Current access token
            refresh_token: Current refresh token
        """
        tokens = self._load_all_tokens()
        tokens[storage_id] = {
            'access_token': access_token,
            'refresh_token': refresh_token,
        }
        self.token_path.write_bytes(self._encrypt_tokens(tokens))
        # Secure file permissions (owner read/write only)
        self.token_path.chmod(0o600)
        logger.debug(f"Tokens of {storage_id} saved with encryption")

    def load_tokens(self, storage_id: str) -> Optional[Dict[str, str]]:
        """Load the decrypted token pair of a storage.

        Returns:
            Dict with access_token and refresh_token, or None if not stored
        """
        return self._load_all_tokens().get(storage_id)
