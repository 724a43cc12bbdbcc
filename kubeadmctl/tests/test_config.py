import os
import stat

import pytest
import yaml
from pydantic import ValidationError

from kubeadmctl.modules.kubeadm import config as config_module
from kubeadmctl.modules.kubeadm.config import InstallerConfig, get_config, set_config
from kubeadmctl.modules.kubeadm.configure import create_config_file, show_config, validate_config_file


@pytest.fixture(autouse=True)
def reset_global_config():
    set_config(None)
    yield
    set_config(None)


def test_defaults():
    config = InstallerConfig()
    assert config.ssh.port == 22
    assert config.retry.max_attempts == 5
    assert config.retry.join_attempts == 3
    assert config.polling.node_ready_timeout == 300
    assert config.run.max_parallel_workers == 10
    assert not config.run.state_dir.startswith('~')


def test_load_from_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump({'retry': {'delay': 1}, 'logging': {'level': 'debug'}}))

    config = InstallerConfig.load(path)

    assert config.retry.delay == 1
    assert config.retry.max_attempts == 5
    assert config.logging.level == 'DEBUG'


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump({'retry': {'delay': 1, 'max_attempts': 2}}))
    monkeypatch.setenv('KUBEADMCTL_RETRY__MAX_ATTEMPTS', '7')

    config = InstallerConfig.load(path)

    assert config.retry.max_attempts == 7
    assert config.retry.delay == 1


def test_missing_or_malformed_file_falls_back_to_defaults(tmp_path):
    assert InstallerConfig.load(tmp_path / 'missing.yaml').retry.max_attempts == 5

    path = tmp_path / 'config.yaml'
    path.write_text('- just\n- a list\n')
    assert InstallerConfig.load(path).retry.max_attempts == 5


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        InstallerConfig(logging={'level': 'LOUD'})
    with pytest.raises(ValidationError):
        InstallerConfig(run={'max_parallel_workers': 0})


def test_global_config_is_cached(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, 'DEFAULT_CONFIG_PATHS', [tmp_path / 'absent.yaml'])
    first = get_config()
    assert get_config() is first

    replacement = InstallerConfig(retry={'max_attempts': 9})
    set_config(replacement)
    assert get_config() is replacement


def test_create_config_file(tmp_path):
    path = create_config_file(tmp_path / 'nested' / 'config.yaml')

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert InstallerConfig.load(path).retry.max_attempts == 5
    with pytest.raises(FileExistsError):
        create_config_file(path)
    create_config_file(path, overwrite=True)


def test_validate_config_file(tmp_path):
    path = create_config_file(tmp_path / 'config.yaml')
    result = validate_config_file(path)
    assert result['valid']
    assert result['errors'] == []

    path.write_text(yaml.safe_dump({'logging': {'level': 'LOUD'}, 'extras': {}}))
    os.chmod(path, 0o644)
    result = validate_config_file(path)
    assert not result['valid']
    assert result['errors'][0].startswith('logging.level')

    path.write_text(yaml.safe_dump({'extras': {}}))
    result = validate_config_file(path)
    assert result['valid']
    assert any('extras' in w for w in result['warnings'])
    assert any('chmod 600' in w for w in result['warnings'])


def test_validate_missing_file(tmp_path):
    result = validate_config_file(tmp_path / 'missing.yaml')
    assert not result['valid']
    assert not result['exists']


def test_show_config(tmp_path):
    path = create_config_file(tmp_path / 'config.yaml')
    text = show_config(path)
    assert f"Loaded from: {path}" in text
    assert 'max_parallel_workers: 10' in text
