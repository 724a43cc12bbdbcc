from . import configure, deploy, status, validate

__all__ = ['configure', 'deploy', 'status', 'validate']
