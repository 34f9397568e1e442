"""Shared fixtures for the Azure VM sample tests"""

from unittest.mock import Mock

import pytest

from azure_vm_sample.config import SampleConfig
from azure_vm_sample.manager import AzureSampleManager


@pytest.fixture
def clean_env(monkeypatch):
    for name in ('ADMIN_USERNAME', 'ADMIN_PASSWORD', 'AZURE_TENANT_ID', 'AZURE_CLIENT_ID',
                 'AZURE_CLIENT_SECRET', 'AZURE_SUBSCRIPTION_ID'):
        # setenv first so values loaded by dotenv are undone too
        monkeypatch.setenv(name, '')
        monkeypatch.delenv(name)


@pytest.fixture
def sample_config(tmp_path, clean_env):
    """Configuration built from defaults only"""
    return SampleConfig(
        config_file=str(tmp_path / 'missing.yaml'),
        secret_file=str(tmp_path / 'missing.secret'),
        storage_account_name='samplestorage01',
    )


@pytest.fixture
def mock_clients():
    """Stand-in for AzureClients; every poller resolves to a Mock"""
    return Mock()


@pytest.fixture
def manager(mock_clients, sample_config):
    return AzureSampleManager(mock_clients, sample_config)
