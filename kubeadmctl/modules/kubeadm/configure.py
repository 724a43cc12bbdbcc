"""kubeadmctl configuration management utility.

This module provides functions to create, validate, and display configuration files.
"""
import os
import logging
from pathlib import Path
from typing import Optional, Union, Dict, Any

import yaml
from pydantic import ValidationError

from .config import InstallerConfig, DEFAULT_CONFIG_PATHS

logger = logging.getLogger("kubeadm.configure")


def find_config_file() -> Optional[Path]:
    """Return the first default configuration file that exists."""
    for path in DEFAULT_CONFIG_PATHS:
        path = path.expanduser().absolute()
        if path.exists():
            return path
    return None


def create_config_file(
    output_path: Optional[Union[str, Path]] = None,
    overwrite: bool = False,
) -> Path:
    """Create a new configuration file with default values.

    Args:
        output_path: Path where to save the configuration file.
                   If None, uses the first writable default location.
        overwrite: If True, overwrite existing file.

    Returns:
        Path to the created configuration file.

    Raises:
        FileExistsError: If the file exists and overwrite is False.
        PermissionError: If unable to write to the target directory.
    """
    if output_path is None:
        for path in DEFAULT_CONFIG_PATHS:
            path = path.expanduser().absolute()
            if not path.exists():
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.touch(exist_ok=False)
                    path.unlink()
                    output_path = path
                    break
                except OSError:
                    continue
        else:
            output_path = Path("kubeadmctl-config.yaml").absolute()
    else:
        output_path = Path(output_path).expanduser().absolute()

    if output_path.exists() and not overwrite:
        raise FileExistsError(f"File already exists: {output_path}")

    config = InstallerConfig()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    config.save(output_path)
    logger.info(f"Created configuration file: {output_path}")

    try:
        output_path.chmod(0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on {output_path}: {e}")

    return output_path


def validate_config_file(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Validate a configuration file.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Dict containing validation results and any errors.
    """
    config_path = Path(config_path).expanduser().absolute()
    result = {
        'valid': False,
        'path': str(config_path),
        'exists': config_path.exists(),
        'errors': [],
        'warnings': []
    }

    if not result['exists']:
        result['errors'].append(f"File does not exist: {config_path}")
        return result

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        result['errors'].append(f"Unreadable configuration: {e}")
        return result

    if not isinstance(data, dict):
        result['errors'].append("Top level of the configuration must be a mapping")
        return result

    try:
        config = InstallerConfig(**data)
    except ValidationError as e:
        for error in e.errors():
            location = '.'.join(str(part) for part in error['loc'])
            result['errors'].append(f"{location}: {error['msg']}")
        return result

    result['valid'] = True

    unknown = sorted(set(data) - set(InstallerConfig.model_fields))
    if unknown:
        result['warnings'].append(f"Unknown sections ignored: {', '.join(unknown)}")

    if config.logging.file and not os.access(Path(config.logging.file).expanduser().parent, os.W_OK):
        result['warnings'].append(f"Log file directory is not writable: {config.logging.file}")

    if config_path.stat().st_mode & 0o077 != 0:
        result['warnings'].append(
            f"Configuration file has insecure permissions. "
            f"Recommended: chmod 600 {config_path}"
        )

    result['config'] = config.model_dump()
    return result


def show_config(config_path: Optional[Union[str, Path]] = None) -> str:
    """Render the effective configuration and its source as text."""
    config = InstallerConfig.load(config_path)
    if config_path:
        loaded_from = str(Path(config_path).expanduser().absolute())
    else:
        found = find_config_file()
        loaded_from = str(found) if found else "default values"

    lines = [
        "kubeadmctl configuration:",
        "=" * 60,
        f"Loaded from: {loaded_from}",
        "-" * 60,
        yaml.safe_dump(config.model_dump(), default_flow_style=False, sort_keys=False).rstrip(),
        "",
        "Environment variables that would override this config:",
        "-" * 60,
        "KUBEADMCTL_SSH__CONNECT_TIMEOUT=10",
        "KUBEADMCTL_LOGGING__LEVEL=DEBUG",
        "KUBEADMCTL_RETRY__MAX_ATTEMPTS=5",
        "KUBEADMCTL_POLLING__NODE_READY_TIMEOUT=300",
        "KUBEADMCTL_RUN__MAX_PARALLEL_WORKERS=10",
    ]
    return "\n".join(lines)
