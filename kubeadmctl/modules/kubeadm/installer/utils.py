"""Utility functions for the kubeadm installer."""

import dataclasses
import logging
import re
import shlex
from typing import Dict, Optional

import requests

from ..errors import MalformedResponse, VersionResolutionError
from ..inventory import VERSION_RE, is_version_keyword
from ..models import ClusterSpec

logger = logging.getLogger("kubeadm.installer.utils")

RELEASE_URL = 'https://dl.k8s.io/release/{channel}.txt'
TOKEN_RE = re.compile(r'^[a-z0-9]{6}\.[a-z0-9]{16}$')
CA_HASH_RE = re.compile(r'^sha256:[0-9a-f]{64}$')
CERTIFICATE_KEY_RE = re.compile(r'^[0-9a-f]{64}$')
DURATION_RE = re.compile(r'^(\d+)([hms])$')
DURATION_UNITS = {'h': 3600, 'm': 60, 's': 1}


def parse_duration(value: str) -> int:
    """Convert a kubeadm style duration such as ``2h`` into seconds."""
    match = DURATION_RE.match(value.strip())
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return int(amount) * DURATION_UNITS[unit]


def parse_join_command(output: str) -> Dict[str, str]:
    """Parse the output of ``kubeadm token create --print-join-command``.

    Args:
        output: Raw command output

    Returns:
        dict: ``api_endpoint``, ``token`` and ``discovery_hash``

    Raises:
        MalformedResponse: If the output does not contain a join command
    """
    line = next((l.strip() for l in output.splitlines() if l.strip().startswith('kubeadm join')), None)
    if line is None:
        raise MalformedResponse("no 'kubeadm join' command in token create output")

    try:
        words = shlex.split(line)
    except ValueError as e:
        raise MalformedResponse(f"unparseable join command: {e}") from e

    values: Dict[str, str] = {}
    if len(words) > 2 and not words[2].startswith('--'):
        values['api_endpoint'] = words[2]
    for flag, key in (('--token', 'token'), ('--discovery-token-ca-cert-hash', 'discovery_hash')):
        if flag in words and words.index(flag) + 1 < len(words):
            values[key] = words[words.index(flag) + 1]

    missing = [key for key in ('api_endpoint', 'token', 'discovery_hash') if key not in values]
    if missing:
        raise MalformedResponse(f"join command is missing {', '.join(missing)}")
    if not TOKEN_RE.match(values['token']):
        raise MalformedResponse("bootstrap token has an unexpected format")
    if not CA_HASH_RE.match(values['discovery_hash']):
        raise MalformedResponse("discovery hash has an unexpected format")
    return values


def parse_certificate_key(output: str) -> str:
    """Extract the certificate key printed last by ``kubeadm init phase upload-certs``."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines or not CERTIFICATE_KEY_RE.match(lines[-1]):
        raise MalformedResponse("upload-certs did not print a certificate key")
    return lines[-1]


def parse_ready_status(output: str) -> Optional[bool]:
    """Interpret the Ready condition status printed by kubectl jsonpath.

    Returns True for "True", False for "False"/"Unknown", None when the
    condition has not been reported yet.
    """
    status = output.strip()
    if status == 'True':
        return True
    if status in ('False', 'Unknown'):
        return False
    if status == '':
        return None
    raise MalformedResponse(f"unexpected Ready condition status: {status[:80]!r}")


def resolve_version(spec: ClusterSpec, timeout: float = 10) -> ClusterSpec:
    """Turn a ``stable``/``latest`` version keyword into a concrete release.

    Args:
        spec: Cluster spec whose version may be a keyword
        timeout: HTTP timeout in seconds

    Returns:
        ClusterSpec: The same spec, or a copy with a concrete ``X.Y.Z`` version

    Raises:
        VersionResolutionError: If the release channel cannot be read
    """
    if not is_version_keyword(spec.version):
        return spec

    url = RELEASE_URL.format(channel=spec.version)
    logger.info(f"Resolving Kubernetes version '{spec.version}' from {url}")
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise VersionResolutionError(f"cannot resolve version '{spec.version}': {e}") from e

    version = response.text.strip().lstrip('v')
    if not VERSION_RE.match(version):
        raise VersionResolutionError(f"release channel returned an unexpected version: {response.text[:40]!r}")
    logger.info(f"Using Kubernetes version {version}")
    return dataclasses.replace(spec, version=version)
