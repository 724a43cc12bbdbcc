"""
kubeadm Cluster Bootstrap Module

This package bootstraps multi-node Kubernetes clusters with kubeadm over SSH.

Key Features:
- Declarative inventory with validation before any remote action
- Ordered bootstrap: first control plane, additional control planes, workers
- Idempotent phases that are safe to re-run, with resumable run state
- Single join-credential handoff shared by every joining node
- Bounded retries and readiness polling with cancellation
- Configuration from files and environment variable overrides
"""

from .models import Inventory, Node, NodeRole, ClusterSpec, Phase, PhaseStatus, ClusterState
from .errors import BootstrapError, InvalidInventory
from .inventory import load_inventory
from .credentials import JoinCredentialExchange
from .installer import KubeadmInstaller
from .installer.deployment import BootstrapOrchestrator
from .report import RunReport, render_report
from .state import RunState

# Configuration management
from .config import InstallerConfig, get_config, set_config, DEFAULT_CONFIG_PATHS
from .configure import create_config_file, validate_config_file, show_config

__all__ = [
    # Core classes
    'Inventory',
    'Node',
    'NodeRole',
    'ClusterSpec',
    'Phase',
    'PhaseStatus',
    'ClusterState',
    'BootstrapOrchestrator',
    'JoinCredentialExchange',
    'KubeadmInstaller',
    'RunReport',
    'RunState',
    'render_report',
    'load_inventory',

    # Errors
    'BootstrapError',
    'InvalidInventory',

    # Configuration management
    'InstallerConfig',
    'get_config',
    'set_config',
    'DEFAULT_CONFIG_PATHS',
    'create_config_file',
    'validate_config_file',
    'show_config',
]

__version__ = "0.1.0"
