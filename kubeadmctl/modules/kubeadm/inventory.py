"""Inventory loading and validation.

The inventory is read once at start-up and turned into immutable models.
Every problem found is reported together; nothing here touches the network
or any remote host.
"""
import ipaddress
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, IO, List, Optional, Tuple, Union

import yaml
from jsonschema import Draft7Validator

from .errors import InvalidInventory
from .models import (
    DEFAULT_API_PORT,
    DEFAULT_CRI_SOCKET,
    DEFAULT_KUBE_VIP_IMAGE,
    DEFAULT_NETWORK_MANIFEST,
    DEFAULT_POD_NETWORK_CIDR,
    ClusterSpec,
    Credential,
    Inventory,
    KubeVipSpec,
    Node,
    NodeRole,
    split_endpoint,
)

logger = logging.getLogger("kubeadm.inventory")

VERSION_RE = re.compile(r'^v?(\d+)\.(\d+)\.(\d+)$')
VERSION_KEYWORD_RE = re.compile(r'^(stable|latest)(-\d+\.\d+)?$')
HOSTNAME_RE = re.compile(r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$')
TTL_RE = re.compile(r'^\d+[hms]$')

INLINE_CREDENTIAL_KEYS = ('user', 'key_file', 'pem', 'password', 'password_env', 'port')

CREDENTIAL_SCHEMA = {
    "type": "object",
    "properties": {
        "user": {"type": "string", "minLength": 1},
        "key_file": {"type": "string"},
        "pem": {"type": "string"},
        "password": {"type": "string"},
        "password_env": {"type": "string"},
        "port": {"type": "integer", "minimum": 1, "maximum": 65535},
    },
    "required": ["user"],
    "additionalProperties": False,
}

NODE_SCHEMA = {
    "type": "object",
    "properties": {
        "address": {"type": "string", "minLength": 1},
        "ip": {"type": "string", "minLength": 1},
        "internal_address": {"type": "string"},
        "hostname": {"type": "string"},
        "credential": {"type": "string"},
        "ordinal": {"type": "integer", "minimum": 1},
        "user": {"type": "string", "minLength": 1},
        "key_file": {"type": "string"},
        "pem": {"type": "string"},
        "password": {"type": "string"},
        "password_env": {"type": "string"},
        "port": {"type": "integer", "minimum": 1, "maximum": 65535},
    },
    "anyOf": [{"required": ["address"]}, {"required": ["ip"]}],
    "additionalProperties": False,
}

INVENTORY_SCHEMA = {
    "type": "object",
    "properties": {
        "cluster": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "kubernetes_version": {"type": "string"},
                "control_plane_endpoint": {"type": "string"},
                "pod_network_cidr": {"type": "string"},
                "network_manifest": {"type": "string", "minLength": 1},
                "cri_socket": {"type": "string", "minLength": 1},
                "token_ttl": {"type": "string"},
                "kube_vip": {
                    "type": "object",
                    "properties": {
                        "interface": {"type": "string", "minLength": 1},
                        "image": {"type": "string", "minLength": 1},
                    },
                    "additionalProperties": False,
                },
            },
            "required": ["kubernetes_version"],
            "additionalProperties": False,
        },
        "credentials": {
            "type": "object",
            "additionalProperties": CREDENTIAL_SCHEMA,
        },
        "masters": {"type": "array", "items": NODE_SCHEMA},
        "workers": {"type": "array", "items": NODE_SCHEMA},
    },
    "required": ["cluster"],
    "additionalProperties": False,
}


def _normalise_legacy(document: Dict[str, Any]) -> Dict[str, Any]:
    """Map the flat cluster_config.yaml layout onto the sectioned one.

    The flat layout keeps ``kubernetes_version`` and ``load_balancer_ip`` at
    the top level next to ``masters``/``workers`` entries carrying ``ip``,
    ``user`` and ``pem``.
    """
    if 'cluster' in document or 'kubernetes_version' not in document:
        return document
    document = dict(document)
    cluster = {'kubernetes_version': document.pop('kubernetes_version')}
    load_balancer_ip = document.pop('load_balancer_ip', None)
    if load_balancer_ip:
        cluster['control_plane_endpoint'] = str(load_balancer_ip)
    if 'name' in document:
        cluster['name'] = document.pop('name')
    document['cluster'] = cluster
    return document


def _read_source(source: Union[str, Path, IO, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(source, dict):
        return source
    try:
        if isinstance(source, (str, Path)):
            with open(Path(source).expanduser(), 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        else:
            data = yaml.safe_load(source)
    except FileNotFoundError:
        raise InvalidInventory([f"inventory file not found: {source}"])
    except (OSError, yaml.YAMLError) as e:
        raise InvalidInventory([f"cannot read inventory: {e}"])
    if not isinstance(data, dict):
        raise InvalidInventory(["inventory must be a YAML mapping"])
    return data


def _schema_errors(document: Dict[str, Any]) -> List[str]:
    validator = Draft7Validator(INVENTORY_SCHEMA)
    errors = []
    for error in sorted(validator.iter_errors(document), key=lambda e: list(e.absolute_path)):
        location = '/'.join(str(part) for part in error.absolute_path) or '<root>'
        errors.append(f"{location}: {error.message}")
    return errors


def normalise_version(version: str) -> str:
    """Strip a leading ``v`` from an ``X.Y.Z`` version; keywords pass through."""
    version = version.strip()
    match = VERSION_RE.match(version)
    if match:
        return '.'.join(match.groups())
    return version


def is_version_keyword(version: str) -> bool:
    return bool(VERSION_KEYWORD_RE.match(version))


def _build_credential(name: str, data: Dict[str, Any], default_port: int,
                      errors: List[str]) -> Optional[Credential]:
    key_file = data.get('key_file') or data.get('pem')
    password = data.get('password')
    password_env = data.get('password_env')

    if password_env:
        password = os.environ.get(password_env)
        if password is None:
            errors.append(f"credential '{name}': environment variable {password_env} is not set")
            return None
    elif password:
        logger.warning(f"Credential '{name}' stores a plain-text password; prefer password_env")

    if not key_file and not password:
        errors.append(f"credential '{name}': needs key_file or password_env")
        return None

    key_path = None
    if key_file:
        key_path = os.path.expanduser(key_file)
        if not os.path.isfile(key_path):
            errors.append(f"credential '{name}': key file {key_file} does not exist")
            return None

    return Credential(
        name=name,
        user=data['user'],
        key_path=key_path,
        password=password,
        port=data.get('port', default_port),
    )


def _check_endpoint(endpoint: str, errors: List[str]) -> None:
    try:
        host, port = split_endpoint(endpoint)
    except ValueError:
        errors.append(f"control_plane_endpoint '{endpoint}': expected host[:port] or [ipv6]:port")
        return
    port = port or str(DEFAULT_API_PORT)
    if not host:
        errors.append(f"control_plane_endpoint '{endpoint}': missing host")
        return
    if not port.isdigit() or not 1 <= int(port) <= 65535:
        errors.append(f"control_plane_endpoint '{endpoint}': invalid port")
    try:
        ipaddress.ip_address(host)
    except ValueError:
        if not HOSTNAME_RE.match(host):
            errors.append(f"control_plane_endpoint '{endpoint}': invalid host")


def _build_spec(cluster: Dict[str, Any], default_endpoint: Optional[str],
                errors: List[str]) -> Optional[ClusterSpec]:
    version = normalise_version(str(cluster['kubernetes_version']))
    if not VERSION_RE.match(version) and not is_version_keyword(version):
        errors.append(
            f"kubernetes_version '{cluster['kubernetes_version']}': expected X.Y.Z, 'stable' or 'latest'"
        )

    endpoint = cluster.get('control_plane_endpoint') or default_endpoint
    if endpoint:
        _check_endpoint(endpoint, errors)
    else:
        errors.append("control_plane_endpoint is required when no master address is known")

    cidr = cluster.get('pod_network_cidr', DEFAULT_POD_NETWORK_CIDR)
    try:
        ipaddress.ip_network(cidr)
    except ValueError:
        errors.append(f"pod_network_cidr '{cidr}': not a valid network")

    token_ttl = cluster.get('token_ttl', '2h')
    if not TTL_RE.match(token_ttl):
        errors.append(f"token_ttl '{token_ttl}': expected a duration such as 2h, 30m or 900s")

    kube_vip = None
    if 'kube_vip' in cluster:
        kube_vip = KubeVipSpec(
            interface=cluster['kube_vip'].get('interface', 'eth0'),
            image=cluster['kube_vip'].get('image', DEFAULT_KUBE_VIP_IMAGE),
        )
        if endpoint:
            try:
                ipaddress.ip_address(split_endpoint(endpoint)[0])
            except ValueError:
                errors.append("kube_vip requires control_plane_endpoint to be a virtual IP address")

    if errors:
        return None

    return ClusterSpec(
        name=cluster.get('name', 'kubernetes'),
        version=version,
        control_plane_endpoint=endpoint,
        pod_network_cidr=cidr,
        network_manifest=cluster.get('network_manifest', DEFAULT_NETWORK_MANIFEST),
        cri_socket=cluster.get('cri_socket', DEFAULT_CRI_SOCKET),
        token_ttl=token_ttl,
        kube_vip=kube_vip,
    )


def _resolve_node_credential(
    group: str,
    index: int,
    entry: Dict[str, Any],
    credentials: Dict[str, Optional[Credential]],
    default_port: int,
    errors: List[str],
) -> Optional[Credential]:
    label = f"{group}[{index}]"
    inline = {k: entry[k] for k in INLINE_CREDENTIAL_KEYS if k in entry}
    if inline:
        if 'credential' in entry:
            errors.append(f"{label}: set either credential or inline user/key_file, not both")
            return None
        if 'user' not in inline:
            errors.append(f"{label}: inline credential needs a user")
            return None
        return _build_credential(label, inline, default_port, errors)

    name = entry.get('credential', 'default')
    if name not in credentials:
        if 'credential' in entry:
            errors.append(f"{label}: undefined credential '{name}'")
        else:
            errors.append(f"{label}: no credential given and no 'default' credential defined")
        return None
    # None means the credential itself was invalid and already reported
    return credentials[name]


def _build_nodes(
    document: Dict[str, Any],
    credentials: Dict[str, Optional[Credential]],
    default_port: int,
    errors: List[str],
) -> List[Node]:
    nodes: List[Node] = []
    groups: Tuple[Tuple[str, str], ...] = (('masters', 'master'), ('workers', 'worker'))

    for group, prefix in groups:
        entries = document.get(group) or []
        ordinals = set()
        staged = []
        for index, entry in enumerate(entries):
            label = f"{group}[{index}]"
            ordinal = entry.get('ordinal', index + 1)
            if ordinal in ordinals:
                errors.append(f"{label}: duplicate ordinal {ordinal}")
            ordinals.add(ordinal)

            hostname = entry.get('hostname') or f"{prefix}0.{ordinal}"
            if len(hostname) > 253 or not HOSTNAME_RE.match(hostname):
                errors.append(
                    f"{label}: invalid hostname '{hostname}' (lowercase alphanumerics, '-' and '.')"
                )

            credential = _resolve_node_credential(group, index, entry, credentials, default_port, errors)
            staged.append((ordinal, entry.get('address') or entry['ip'], hostname, credential, entry))

        staged.sort(key=lambda item: item[0])
        for position, (ordinal, address, hostname, credential, entry) in enumerate(staged):
            if group == 'masters':
                role = NodeRole.CONTROL_PLANE_FIRST if position == 0 else NodeRole.CONTROL_PLANE_JOIN
            else:
                role = NodeRole.WORKER
            if credential is None:
                continue
            nodes.append(Node(
                address=address,
                hostname=hostname,
                role=role,
                credential=credential,
                ordinal=ordinal,
                internal_address=entry.get('internal_address'),
            ))

    return nodes


def _check_duplicates(document: Dict[str, Any], errors: List[str]) -> None:
    addresses: Dict[str, str] = {}
    hostnames: Dict[str, str] = {}
    for group, prefix in (('masters', 'master'), ('workers', 'worker')):
        for index, entry in enumerate(document.get(group) or []):
            label = f"{group}[{index}]"
            address = entry.get('address') or entry.get('ip')
            if address in addresses:
                errors.append(f"{label}: address {address} already used by {addresses[address]}")
            else:
                addresses[address] = label
            hostname = entry.get('hostname') or f"{prefix}0.{entry.get('ordinal', index + 1)}"
            if hostname in hostnames:
                errors.append(f"{label}: hostname {hostname} already used by {hostnames[hostname]}")
            else:
                hostnames[hostname] = label


def load_inventory(source: Union[str, Path, IO, Dict[str, Any]], default_ssh_port: int = 22) -> Inventory:
    """Load and validate an inventory.

    Args:
        source: path to a YAML file, an open text stream or a parsed mapping
        default_ssh_port: port used by credentials that do not set one

    Returns:
        Inventory with exactly one control-plane-first node

    Raises:
        InvalidInventory: with every problem found
    """
    document = _normalise_legacy(_read_source(source))

    errors = _schema_errors(document)
    if errors:
        raise InvalidInventory(errors)

    masters = document.get('masters') or []
    if not masters:
        errors.append("at least one master (control-plane) node is required")

    credentials: Dict[str, Optional[Credential]] = {}
    for name, data in (document.get('credentials') or {}).items():
        credentials[name] = _build_credential(name, data, default_ssh_port, errors)

    _check_duplicates(document, errors)
    nodes = _build_nodes(document, credentials, default_ssh_port, errors)

    default_endpoint = None
    if masters:
        first = min(enumerate(masters), key=lambda item: item[1].get('ordinal', item[0] + 1))[1]
        default_endpoint = first.get('internal_address') or first.get('address') or first.get('ip')
    spec = _build_spec(document['cluster'], default_endpoint, errors)

    if errors:
        raise InvalidInventory(errors)

    inventory = Inventory(spec=spec, nodes=tuple(nodes))
    logger.debug(
        f"Loaded inventory for {spec.name}: {len(inventory.control_planes)} control plane(s), "
        f"{len(inventory.workers)} worker(s)"
    )
    return inventory
