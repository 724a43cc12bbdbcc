import io

import pytest

from kubeadmctl.modules.kubeadm.errors import InvalidInventory
from kubeadmctl.modules.kubeadm.inventory import is_version_keyword, load_inventory, normalise_version
from kubeadmctl.modules.kubeadm.models import NodeRole

from conftest import inventory_document


def errors_of(document):
    with pytest.raises(InvalidInventory) as exc_info:
        load_inventory(document)
    return exc_info.value.errors


def test_minimal_inventory_gets_defaults(key_file):
    inventory = load_inventory(inventory_document(key_file, masters=1, workers=2))

    spec = inventory.spec
    assert spec.name == 'test'
    assert spec.version == '1.30.2'
    assert spec.control_plane_endpoint == '10.0.0.1'
    assert spec.api_endpoint == '10.0.0.1:6443'
    assert spec.pod_network_cidr == '10.244.0.0/16'
    assert spec.token_ttl == '2h'
    assert [n.hostname for n in inventory.nodes] == ['master0.1', 'worker0.1', 'worker0.2']
    assert inventory.first_control_plane.address == '10.0.0.1'
    assert inventory.nodes[0].credential.user == 'ubuntu'
    assert inventory.nodes[0].credential.port == 22


def test_lowest_ordinal_master_is_first_control_plane(key_file):
    document = inventory_document(key_file, masters=0, workers=0)
    document['masters'] = [
        {'address': '10.0.0.5', 'ordinal': 3},
        {'address': '10.0.0.6', 'ordinal': 1},
        {'address': '10.0.0.7', 'ordinal': 2},
    ]
    inventory = load_inventory(document)

    assert inventory.first_control_plane.address == '10.0.0.6'
    assert [n.address for n in inventory.control_plane_joins] == ['10.0.0.7', '10.0.0.5']
    assert all(n.role is NodeRole.CONTROL_PLANE_JOIN for n in inventory.control_plane_joins)
    assert inventory.spec.control_plane_endpoint == '10.0.0.6'


def test_legacy_flat_layout(key_file):
    text = f"""
kubernetes_version: v1.29.4
load_balancer_ip: 192.168.1.10
masters:
  - ip: 192.168.1.11
    user: root
    pem: {key_file}
workers:
  - ip: 192.168.1.21
    user: root
    pem: {key_file}
"""
    inventory = load_inventory(io.StringIO(text))

    assert inventory.spec.version == '1.29.4'
    assert inventory.spec.api_endpoint == '192.168.1.10:6443'
    assert inventory.workers[0].credential.user == 'root'
    assert not inventory.workers[0].credential.needs_sudo
    assert inventory.spec.name == 'kubernetes'


def test_every_problem_is_reported_together(key_file):
    document = inventory_document(key_file, masters=2, workers=2, kubernetes_version='1.30')
    document['workers'][1]['address'] = '10.0.0.1'
    document['workers'][0]['hostname'] = 'Bad_Host'
    document['cluster']['pod_network_cidr'] = '10.244.0.0/33'

    errors = errors_of(document)

    assert any("already used" in e for e in errors)
    assert any("invalid hostname 'Bad_Host'" in e for e in errors)
    assert any("kubernetes_version '1.30'" in e for e in errors)
    assert any("pod_network_cidr" in e for e in errors)


def test_zero_masters_is_rejected(key_file):
    errors = errors_of(inventory_document(key_file, masters=0, workers=1))
    assert any('at least one master' in e for e in errors)


def test_schema_violations_are_reported(key_file):
    document = inventory_document(key_file)
    document['cluster']['unknown_option'] = True
    del document['masters'][0]['address']

    errors = errors_of(document)

    assert any('unknown_option' in e for e in errors)
    assert any(e.startswith('masters/0') for e in errors)


def test_missing_key_file_is_rejected(tmp_path):
    document = inventory_document(tmp_path / 'missing', masters=1, workers=0)
    errors = errors_of(document)
    assert any('does not exist' in e for e in errors)


def test_password_env_must_be_set(key_file, monkeypatch):
    monkeypatch.delenv('NODE_PASSWORD', raising=False)
    document = inventory_document(key_file, masters=1, workers=0)
    document['credentials']['default'] = {'user': 'ubuntu', 'password_env': 'NODE_PASSWORD'}

    errors = errors_of(document)
    assert any('NODE_PASSWORD is not set' in e for e in errors)

    monkeypatch.setenv('NODE_PASSWORD', 's3cret')
    inventory = load_inventory(document)
    assert inventory.first_control_plane.credential.password == 's3cret'


def test_undefined_credential_reference(key_file):
    document = inventory_document(key_file, masters=1, workers=0)
    document['masters'][0]['credential'] = 'ops'
    errors = errors_of(document)
    assert any("undefined credential 'ops'" in e for e in errors)


def test_inline_credential_overrides_default(key_file):
    document = inventory_document(key_file, masters=1, workers=1)
    document['workers'][0].update({'user': 'admin', 'key_file': str(key_file), 'port': 2222})

    worker = load_inventory(document).workers[0]
    assert worker.credential.user == 'admin'
    assert worker.credential.port == 2222


def test_default_ssh_port_applies_to_credentials(key_file):
    inventory = load_inventory(inventory_document(key_file), default_ssh_port=2200)
    assert {n.credential.port for n in inventory.nodes} == {2200}


def test_kube_vip_requires_ip_endpoint(key_file):
    document = inventory_document(key_file, control_plane_endpoint='api.example.com',
                                  kube_vip={'interface': 'eth1'})
    errors = errors_of(document)
    assert any('kube_vip requires' in e for e in errors)


def test_invalid_endpoint_and_ttl(key_file):
    document = inventory_document(key_file, control_plane_endpoint='10.0.0.100:99999', token_ttl='2 hours')
    errors = errors_of(document)
    assert any('invalid port' in e for e in errors)
    assert any('token_ttl' in e for e in errors)


@pytest.mark.parametrize('endpoint, host, api_endpoint', [
    ('fd00::10', 'fd00::10', '[fd00::10]:6443'),
    ('[fd00::10]:8443', 'fd00::10', '[fd00::10]:8443'),
    ('api.example.com:8443', 'api.example.com', 'api.example.com:8443'),
])
def test_endpoint_forms(key_file, endpoint, host, api_endpoint):
    spec = load_inventory(inventory_document(key_file, control_plane_endpoint=endpoint)).spec
    assert spec.endpoint_host == host
    assert spec.api_endpoint == api_endpoint


def test_ipv6_virtual_ip_is_accepted_for_kube_vip(key_file):
    document = inventory_document(key_file, control_plane_endpoint='[fd00::10]:6443',
                                  kube_vip={'interface': 'eth1'})
    assert load_inventory(document).spec.endpoint_host == 'fd00::10'


@pytest.mark.parametrize('endpoint', ['[fd00::10', '[fd00::10]6443'])
def test_malformed_bracketed_endpoint(key_file, endpoint):
    errors = errors_of(inventory_document(key_file, control_plane_endpoint=endpoint))
    assert any('expected host[:port]' in e for e in errors)


def test_version_keywords_are_accepted_unresolved(key_file):
    inventory = load_inventory(inventory_document(key_file, kubernetes_version='stable-1.30'))
    assert inventory.spec.version == 'stable-1.30'
    assert is_version_keyword('latest')
    assert not is_version_keyword('1.30.2')
    assert normalise_version('v1.30.2') == '1.30.2'


def test_unreadable_inventory(tmp_path):
    with pytest.raises(InvalidInventory) as exc_info:
        load_inventory(tmp_path / 'nope.yaml')
    assert 'not found' in str(exc_info.value)

    path = tmp_path / 'list.yaml'
    path.write_text('- a\n- b\n')
    with pytest.raises(InvalidInventory):
        load_inventory(path)
