"""
Configuration management for the WFS extractor.

Usage:
    from wfsx.config.settings import Config
    config = Config()
    extractor = WfsExtractor(config)

Environment Variables (WFSX_ prefix):
    WFSX_ADMIN_USERNAME: Privileged account used against the secured host
    WFSX_ADMIN_PASSWORD: Password of the privileged account
    WFSX_SECURE_HOST: Host name whose services are trusted with impersonation
    WFSX_OUTPUT_DIR: Base directory extraction directories are created in
    WFSX_TIMEOUT_MS: Feature retrieval timeout in milliseconds
    WFSX_CAPABILITIES_TIMEOUT_S: Capabilities fetch timeout in seconds
    WFSX_WFS_VERSION: WFS protocol version
    WFSX_CHECK_PERMISSION: Run the capabilities permission check before extracting
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdminCredentials:
    """Privileged identity attached to requests against the secured host."""
    username: str = ""
    password: str = ""

    @property
    def is_set(self) -> bool:
        return bool(self.username)

    def __repr__(self) -> str:
        return f"AdminCredentials(username={self.username!r}, password=***)"


@dataclass(frozen=True)
class ServiceConfig:
    """Upstream service connection settings."""
    secure_host: str = "localhost"
    wfs_version: str = "1.0.0"
    timeout_ms: int = 60000
    capabilities_timeout_s: float = 60.0
    max_features: int = 0  # 0 = unbounded
    lenient: bool = True
    protocol: bool = True  # POST GetFeature requests

    def __post_init__(self):
        """Validate service configuration."""
        if not self.secure_host:
            raise ValueError("Secure host cannot be empty")
        if self.timeout_ms <= 0:
            raise ValueError("Timeout must be positive")
        if self.capabilities_timeout_s <= 0:
            raise ValueError("Capabilities timeout must be positive")
        if self.max_features < 0:
            raise ValueError("Max features must be non-negative")
        if self.wfs_version not in ("1.0.0", "1.1.0"):
            raise ValueError("WFS version must be 1.0.0 or 1.1.0")

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


class ConfigurationError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """
    Extractor settings resolved once per process.

    Precedence, highest first: keyword overrides, process environment,
    the explicit ``env_file`` (or ``.env.<ENVIRONMENT>`` then ``.env``).

    Example:
        config = Config(environment="production")
        config = Config(env_file=Path("/secure/extractor.env"))
        config = Config(load_env=False, secure_host="geo.example.org")  # tests
    """

    def __init__(self,
                 environment: Optional[str] = None,
                 env_file: Optional[Path] = None,
                 load_env: bool = True,
                 **overrides: Any):
        """
        Initialize configuration.

        Args:
            environment: Target environment (development|staging|production)
            env_file: Explicit path to environment file
            load_env: Whether to read .env files at all
            **overrides: Explicit values that win over the environment
                (admin_username, admin_password, secure_host, output_dir,
                timeout_ms, capabilities_timeout_s, wfs_version, check_permission)
        """
        self.environment = environment or os.getenv("ENVIRONMENT", "development")
        self.project_root = self._find_project_root()
        self._loaded_env_files: list[str] = []

        if load_env:
            self._load_environment_variables(env_file)

        self._load_admin_config(overrides)
        self._load_service_config(overrides)
        self._load_output_config(overrides)

    def _find_project_root(self) -> Path:
        """Directory searched for ``.env`` files: the working directory or the nearest checkout root."""
        cwd = Path.cwd()
        if any((cwd / name).exists() for name in ('.env', f'.env.{self.environment}')):
            return cwd
        for parent in Path(__file__).resolve().parents:
            if (parent / 'pyproject.toml').exists() or (parent / '.git').exists():
                return parent
        return cwd

    def _env_file_candidates(self, env_file: Optional[Path]) -> list[Path]:
        if env_file:
            if not env_file.exists():
                raise ConfigurationError(f"Specified env file not found: {env_file}")
            return [env_file]
        # environment-specific values are loaded first so they win over .env
        candidates = [self.project_root / f".env.{self.environment}", self.project_root / ".env"]
        return [path for path in candidates if path.exists()]

    def _load_environment_variables(self, env_file: Optional[Path]) -> None:
        """Load .env files into the process environment; existing variables are kept."""
        for path in self._env_file_candidates(env_file):
            load_dotenv(path)
            self._loaded_env_files.append(str(path))
            logger.info(f"Loaded settings from {path}")

        if not self._loaded_env_files:
            logger.debug(f"No .env file under {self.project_root}, using process environment only")
        logger.debug(f"Environment: {self.environment}")

    def _load_admin_config(self, overrides: dict[str, Any]) -> None:
        """Load the privileged identity used against the secured host."""
        username = overrides.get("admin_username", os.getenv("WFSX_ADMIN_USERNAME", ""))
        password = overrides.get("admin_password", os.getenv("WFSX_ADMIN_PASSWORD", ""))

        if username and not password:
            logger.warning("WFSX_ADMIN_USERNAME is set without WFSX_ADMIN_PASSWORD")

        self.admin = AdminCredentials(username=username or "", password=password or "")

    def _load_service_config(self, overrides: dict[str, Any]) -> None:
        """Load upstream service settings."""
        try:
            self.service = ServiceConfig(
                secure_host=overrides.get("secure_host", os.getenv("WFSX_SECURE_HOST", "localhost")),
                wfs_version=overrides.get("wfs_version", os.getenv("WFSX_WFS_VERSION", "1.0.0")),
                timeout_ms=int(overrides.get("timeout_ms", os.getenv("WFSX_TIMEOUT_MS", "60000"))),
                capabilities_timeout_s=float(
                    overrides.get("capabilities_timeout_s", os.getenv("WFSX_CAPABILITIES_TIMEOUT_S", "60"))
                ),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid service configuration: {e}")

        if "check_permission" in overrides:
            self.check_permission = bool(overrides["check_permission"])
        else:
            self.check_permission = _env_bool("WFSX_CHECK_PERMISSION", "true")

    def _load_output_config(self, overrides: dict[str, Any]) -> None:
        """Load the base output directory."""
        output_dir = overrides.get("output_dir", os.getenv("WFSX_OUTPUT_DIR", "extractions"))
        self.output_dir = Path(output_dir).expanduser()

    def get_service_settings(self) -> dict[str, Any]:
        """
        Get connection settings as dictionary (no secrets).

        Returns:
            Dictionary of upstream connection settings
        """
        return {
            'secure_host': self.service.secure_host,
            'wfs_version': self.service.wfs_version,
            'timeout_ms': self.service.timeout_ms,
            'max_features': self.service.max_features,
            'lenient': self.service.lenient,
            'protocol': self.service.protocol,
        }

    def get_security_summary(self) -> dict[str, Any]:
        """
        Get security configuration summary for audit purposes.

        Returns:
            Dictionary with security-relevant configuration info (no secrets)
        """
        return {
            'environment': self.environment,
            'loaded_env_files': self._loaded_env_files,
            'secure_host': self.service.secure_host,
            'admin_username': self.admin.username or None,
            'admin_password_set': bool(self.admin.password),
            'check_permission': self.check_permission,
        }

    def __repr__(self) -> str:
        """Safe string representation without credentials."""
        return (
            f"Config(environment={self.environment}, "
            f"secure_host={self.service.secure_host}, "
            f"output_dir={self.output_dir})"
        )
