"""kubeadm module configuration management.

This module handles configuration loading from multiple sources with the following precedence:
1. Explicitly passed parameters
2. Environment variables (KUBEADMCTL_ prefix, nested with __)
3. Configuration files
4. Default values
"""
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List, Union
import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("kubeadm.config")

# Default configuration paths
DEFAULT_CONFIG_PATHS = [
    Path("/etc/kubeadmctl/config.yaml"),
    Path("~/.config/kubeadmctl/config.yaml").expanduser(),
    Path("kubeadmctl-config.yaml").absolute(),
]

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class SSHConfig(BaseModel):
    """SSH connection configuration."""
    port: int = Field(
        default=22,
        description="SSH port used when a credential does not set one"
    )
    connect_timeout: int = Field(
        default=10,
        description="SSH connection timeout in seconds"
    )
    command_timeout: int = Field(
        default=300,
        description="Default remote command timeout in seconds"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    file: Optional[str] = Field(
        default=None,
        description="Path to log file (if None, logs to stderr only)"
    )
    max_size_mb: int = Field(
        default=100,
        description="Maximum log file size in MB before rotation"
    )
    backup_count: int = Field(
        default=5,
        description="Number of backup log files to keep"
    )

    @field_validator('level')
    @classmethod
    def check_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"level must be one of {', '.join(LOG_LEVELS)}")
        return level


class RetryConfig(BaseModel):
    """Attempt budgets and fixed delays per operation kind."""
    max_attempts: int = Field(default=5, ge=1, description="Attempts for generic transient failures")
    delay: float = Field(default=10.0, ge=0, description="Seconds between generic attempts")
    key_download_attempts: int = Field(default=5, ge=1, description="Attempts to fetch the repository signing key")
    key_download_delay: float = Field(default=15.0, ge=0, description="Seconds between key download attempts")
    network_attempts: int = Field(default=5, ge=1, description="Attempts to apply the pod network manifest")
    network_delay: float = Field(default=10.0, ge=0, description="Seconds between manifest apply attempts")
    join_attempts: int = Field(default=3, ge=1, description="Attempts for kubeadm join")
    join_delay: float = Field(default=15.0, ge=0, description="Seconds between join attempts")


class PollingConfig(BaseModel):
    """Readiness polling configuration."""
    interval: float = Field(default=10.0, gt=0, description="Seconds between readiness checks")
    api_timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for the API server")
    node_ready_timeout: float = Field(default=300.0, gt=0, description="Seconds to wait for each node to be Ready")


class RunConfig(BaseModel):
    """Orchestration settings."""
    max_parallel_workers: int = Field(
        default=10,
        ge=1,
        description="Upper bound on nodes operated on concurrently"
    )
    state_dir: str = Field(
        default="~/.kubeadmctl/state",
        description="Directory holding per-cluster run state files"
    )
    handoff_dir: Optional[str] = Field(
        default=None,
        description="Directory for the join material handoff file (temporary directory if unset)"
    )
    remote_join_dir: str = Field(
        default="/tmp",
        description="Remote directory join configurations are uploaded to"
    )
    remove_control_plane_taint: bool = Field(
        default=True,
        description="Allow workloads on the first control plane once it is Ready"
    )

    @field_validator('state_dir')
    @classmethod
    def expand_state_dir(cls, v: str) -> str:
        """Expand the user home directory in the state path."""
        return os.path.expanduser(v)


class InstallerConfig(BaseSettings):
    """kubeadm installer configuration."""
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    run: RunConfig = Field(default_factory=RunConfig)

    model_config = SettingsConfigDict(
        env_prefix="KUBEADMCTL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        # File data arrives as init kwargs; environment wins over it
        return env_settings, init_settings, file_secret_settings

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'InstallerConfig':
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if config_path.exists():
                config_data = cls._load_config_file(config_path)
            else:
                logger.warning(f"Config file {config_path} not found, using defaults")
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    logger.debug(f"Loading configuration from {path}")
                    config_data = cls._load_config_file(path)
                    break

        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring config file {path}: top level is not a mapping")
            return {}
        return data

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = self.model_dump(exclude_none=True)

        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)


# Global configuration instance
_config: Optional[InstallerConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> InstallerConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = InstallerConfig.load(config_path)
    return _config


def set_config(config: Optional[InstallerConfig]) -> None:
    """Set (or with None, reset) the global configuration instance."""
    global _config
    _config = config
