import os
from pathlib import Path
from typing import Any, Dict, List

from kubernetes import client, config


def load_kubeconfig(path: str = None) -> str:
    """
    Load the kubeconfig from a given path, the KUBECONFIG_CONTENT env var or
    the default location. Returns the actual path used to load the kubeconfig.
    """
    # CI/CD secret-based loading
    if "KUBECONFIG_CONTENT" in os.environ and not path:
        fd = os.open("/tmp/kubeadmctl-kubeconfig.yaml", os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(os.environ["KUBECONFIG_CONTENT"])
        config.load_kube_config(config_file="/tmp/kubeadmctl-kubeconfig.yaml")
        return "/tmp/kubeadmctl-kubeconfig.yaml"

    resolved = Path(os.path.expanduser(path or "~/.kube/config")).resolve()
    if not resolved.exists():
        raise FileNotFoundError(f"❌ Kubeconfig not found: {resolved}")
    config.load_kube_config(config_file=str(resolved))
    return str(resolved)


def list_node_status(api: client.CoreV1Api = None) -> List[Dict[str, Any]]:
    """Summarise every node's readiness, roles, kubelet version and internal IP."""
    api = api or client.CoreV1Api()
    nodes = []
    for item in api.list_node().items:
        labels = item.metadata.labels or {}
        roles = sorted(
            key.split('/', 1)[1] for key in labels
            if key.startswith('node-role.kubernetes.io/')
        )
        ready = next(
            (c.status for c in (item.status.conditions or []) if c.type == 'Ready'),
            'Unknown'
        )
        internal_ip = next(
            (a.address for a in (item.status.addresses or []) if a.type == 'InternalIP'),
            ''
        )
        nodes.append({
            'name': item.metadata.name,
            'ready': ready,
            'roles': roles or ['<none>'],
            'version': item.status.node_info.kubelet_version if item.status.node_info else '',
            'internal_ip': internal_ip,
        })
    return nodes
