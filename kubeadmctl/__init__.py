"""kubeadmctl: declarative kubeadm cluster bootstrap over SSH."""

__version__ = "0.1.0"
