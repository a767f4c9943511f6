import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
import yaml
from dotenv import load_dotenv
from keyring.errors import KeyringError
from pydantic import ValidationError as PydanticValidationError

from parley.config.models import ParleyConfig
from parley.utils.errors import ConfigurationError
from parley.utils.logging import get_logger

logger = get_logger(__name__)

KEYRING_SERVICE = "parley"

# Gemini talks to a fixed SDK target, so it has no endpoint override.
ENDPOINT_PROVIDERS = ("openai", "anthropic")


class ConfigManager:
    """Manages configuration from YAML, the OS keyring and environment variables"""

    def __init__(self, config_path: Optional[str] = None):
        if config_path:
            self.config_path = Path(config_path)
            self.config_dir = self.config_path.parent
        else:
            self.config_dir = Path.home() / ".parley"
            self.config_path = self.config_dir / "config.yaml"
        self.config_dir.mkdir(parents=True, exist_ok=True)

        load_dotenv()

        if not self.config_path.exists():
            self._create_default_config()

        self._config_data = self._load_config_file()
        try:
            self.config = ParleyConfig(**self._config_data)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration in {self.config_path}: {e}",
                hint="Fix or delete the file to regenerate defaults",
            ) from e
        logger.debug(f"Config loaded from {self.config_path}")

    def _default_config(self) -> Dict[str, Any]:
        return {
            "version": "1.0",
            "defaults": {
                "provider": "openai",
                "model": "gpt-4o-mini",
            },
            "providers": {
                "openai": {
                    "enabled": True,
                    "api_key_env": "OPENAI_API_KEY",
                    "endpoint_env": "OPENAI_API_ENDPOINT",
                    "default_model": "gpt-4o-mini",
                    "max_attempts": 1,
                    "usage_fallback": True,
                    "stream_usage": True,
                },
                "anthropic": {
                    "enabled": True,
                    "api_key_env": "ANTHROPIC_API_KEY",
                    "endpoint_env": "ANTHROPIC_API_ENDPOINT",
                    "default_model": "claude-3-haiku",
                    "max_tokens": 1000,
                    "read_timeout": 90.0,
                    "max_attempts": 3,
                },
                "gemini": {
                    "enabled": True,
                    "api_key_env": "GEMINI_API_KEY",
                    "default_model": "gemini-1.5-flash",
                    "max_attempts": 1,
                },
            },
            "storage": {
                "path": str(self.config_dir / "conversations"),
                "cache_size": 5,
                "max_history": 50,
                "snapshot_interval": 0.5,
            },
            "streaming": {"throttle_ms": 50},
            "logging": {"level": "WARNING", "file": None},
            "pricing": {},
        }

    def _create_default_config(self):
        """Create default configuration file"""
        self._write_yaml(self._default_config())
        logger.info(f"Created default config at {self.config_path}")

    def _load_config_file(self) -> Dict:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse {self.config_path}: {e}") from e
        if data is None:
            return self._default_config()
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_path} must contain a mapping")
        data.setdefault("storage", {"path": str(self.config_dir / "conversations")})
        return data

    def _write_yaml(self, data: Dict[str, Any]):
        """Write the document to a temp file next to the config, then move it into place."""
        fd, tmp_path = tempfile.mkstemp(
            dir=self.config_dir, prefix=".config-", suffix=".yaml.tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False)
            shutil.move(tmp_path, self.config_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str, default=None) -> Any:
        """Get configuration value using dot notation"""
        return self.config.get_dot_notation(key, default)

    def get_provider_config(self, provider: str) -> Dict:
        """Get configuration for a provider with its API key and endpoint resolved.

        Returns an empty dict for providers missing from the config file.
        """
        p_config = self.config.providers.get(provider)
        if not p_config:
            return {}
        data = p_config.model_dump()
        data["api_key"] = self.get_api_key(provider)
        data["endpoint"] = self.get_endpoint(provider)
        return data

    def get_api_key(self, provider: str) -> Optional[str]:
        """Resolve a provider's API key: config file, then keyring, then environment."""
        p_config = self.config.providers.get(provider)
        if p_config and p_config.api_key:
            return p_config.api_key

        key_name = f"{provider.upper()}_API_KEY"
        try:
            stored = keyring.get_password(KEYRING_SERVICE, key_name)
        except KeyringError as e:
            logger.debug(f"Keyring unavailable for {key_name}: {e}")
            stored = None
        if stored:
            return stored

        env_name = (p_config.api_key_env if p_config else None) or key_name
        return os.getenv(env_name) or None

    def set_api_key(self, provider: str, api_key: str):
        """Store a provider's API key in the OS keyring."""
        key_name = f"{provider.upper()}_API_KEY"
        try:
            keyring.set_password(KEYRING_SERVICE, key_name, api_key)
        except KeyringError as e:
            raise ConfigurationError(
                f"Could not store {key_name} in the system keyring: {e}",
                hint=f"Set the {key_name} environment variable instead",
            ) from e
        logger.info(f"Stored {key_name} in keyring service: {KEYRING_SERVICE}")

    def get_endpoint(self, provider: str) -> Optional[str]:
        if provider not in ENDPOINT_PROVIDERS:
            return None
        p_config = self.config.providers.get(provider)
        if p_config and p_config.endpoint:
            return p_config.endpoint
        env_name = (p_config.endpoint_env if p_config else None) or f"{provider.upper()}_API_ENDPOINT"
        return os.getenv(env_name) or None

    def get_default_provider(self) -> str:
        """Get default provider name"""
        return self.config.defaults.provider

    def get_default_model(self, provider: Optional[str] = None) -> str:
        """Get default model for provider"""
        if provider and provider in self.config.providers:
            return self.config.providers[provider].default_model
        return self.config.defaults.model

    def save(self):
        """Save current configuration to file"""
        self._write_yaml(self.config.model_dump())
        logger.info(f"Config saved to {self.config_path}")
