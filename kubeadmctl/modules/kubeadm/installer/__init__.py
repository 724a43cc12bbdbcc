"""kubeadm installer: remote operations on cluster nodes.

The orchestrator lives in ``deployment`` and is imported from there directly.
"""

from .core import InitOutcome, KubeadmInstaller

__all__ = ['InitOutcome', 'KubeadmInstaller']
