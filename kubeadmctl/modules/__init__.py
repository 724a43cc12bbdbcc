"""
Cluster management modules.
"""
from .ssh import ConnectionPool, RemoteExecutor, get_ssh_pool

__all__ = [
    'ConnectionPool',
    'RemoteExecutor',
    'get_ssh_pool',
]
