"""Centralized configuration for sshmon.

All settings are loaded from environment variables with sensible defaults.
Use a .env file or export variables before running.

Example:
    export SSHMON_SSH_PORT=2222
    export SSHMON_PROFILE=ubuntu-server
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _get_env(key: str, default: str) -> str:
    """Get environment variable with fallback."""
    return os.environ.get(key, default)


def _get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer with fallback."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def _get_env_float(key: str, default: float) -> float:
    """Get environment variable as float with fallback."""
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean with fallback."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


# Base paths
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = DATA_DIR / "logs"


@dataclass(frozen=True)
class SSHConfig:
    """Listener and transport configuration."""

    host: str = field(default_factory=lambda: _get_env("SSHMON_SSH_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _get_env_int("SSHMON_SSH_PORT", 2222))
    host_key_path: Path = field(
        default_factory=lambda: Path(
            _get_env("SSHMON_HOST_KEY", str(DATA_DIR / "host.key"))
        )
    )
    banner: str = field(
        default_factory=lambda: _get_env(
            "SSHMON_SSH_BANNER", "SSH-2.0-OpenSSH_8.2p1 Ubuntu-4ubuntu0.3"
        )
    )


@dataclass(frozen=True)
class SessionConfig:
    """Session limits and pacing."""

    max_sessions: int = field(
        default_factory=lambda: _get_env_int("SSHMON_MAX_SESSIONS", 50)
    )
    max_sessions_per_ip: int = field(
        default_factory=lambda: _get_env_int("SSHMON_MAX_SESSIONS_PER_IP", 0)
    )
    idle_timeout: float = field(
        default_factory=lambda: _get_env_float("SSHMON_IDLE_TIMEOUT", 300.0)
    )
    command_delay_ms: int = field(
        default_factory=lambda: _get_env_int("SSHMON_COMMAND_DELAY_MS", 50)
    )
    log_localhost: bool = field(
        default_factory=lambda: _get_env_bool("SSHMON_LOG_LOCALHOST", False)
    )
    shutdown_grace: float = field(
        default_factory=lambda: _get_env_float("SSHMON_SHUTDOWN_GRACE", 5.0)
    )

    @property
    def command_delay(self) -> float:
        """Artificial per-command delay in seconds."""
        return max(0, self.command_delay_ms) / 1000.0


@dataclass(frozen=True)
class EmulationConfig:
    """Which device persona the fake shell presents."""

    profile: str = field(
        default_factory=lambda: _get_env("SSHMON_PROFILE", "raspberry-pi")
    )


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: _get_env("SSHMON_LOG_LEVEL", "INFO"))
    format: str = field(
        default_factory=lambda: _get_env(
            "SSHMON_LOG_FORMAT",
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    )
    file: Optional[Path] = field(
        default_factory=lambda: (
            Path(_get_env("SSHMON_LOG_FILE", ""))
            if _get_env("SSHMON_LOG_FILE", "")
            else None
        )
    )
    logs_dir: Path = field(
        default_factory=lambda: Path(_get_env("SSHMON_LOGS_DIR", str(LOGS_DIR)))
    )


@dataclass(frozen=True)
class ThreatIntelConfig:
    """IP enrichment configuration."""

    enabled: bool = field(
        default_factory=lambda: _get_env_bool("SSHMON_THREAT_INTEL", False)
    )
    timeout: float = field(
        default_factory=lambda: _get_env_float("SSHMON_THREAT_INTEL_TIMEOUT", 5.0)
    )
    cache_ttl: int = field(
        default_factory=lambda: _get_env_int("SSHMON_THREAT_INTEL_CACHE_TTL", 604800)
    )
    abuseipdb_key: str = field(
        default_factory=lambda: _get_env("SSHMON_ABUSEIPDB_KEY", "")
    )


@dataclass(frozen=True)
class MetricsConfig:
    """Prometheus endpoint configuration."""

    port: int = field(default_factory=lambda: _get_env_int("SSHMON_METRICS_PORT", 0))


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    ssh: SSHConfig = field(default_factory=SSHConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    emulation: EmulationConfig = field(default_factory=EmulationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    threat_intel: ThreatIntelConfig = field(default_factory=ThreatIntelConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    # Paths
    project_root: Path = PROJECT_ROOT
    data_dir: Path = DATA_DIR


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Creates a new instance if one doesn't exist.
    Configuration is loaded from environment variables.
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Force reload of configuration from environment.

    Useful for testing or dynamic reconfiguration.
    """
    global _config
    _config = Config()
    return _config
