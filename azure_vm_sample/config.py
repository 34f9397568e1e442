"""
Configuration for the Azure VM sample.

Values are resolved in this order: explicit arguments (command line),
config.yaml, built-in defaults. Admin credentials come from .env.secret and
the service principal from the process environment.
"""

import os
import re
import sys
import random
import string
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from azure.identity import ClientSecretCredential


AZURE_ENV_VARS = (
    'AZURE_TENANT_ID',
    'AZURE_CLIENT_ID',
    'AZURE_CLIENT_SECRET',
    'AZURE_SUBSCRIPTION_ID',
)

DEFAULT_ADMIN_USERNAME = 'notadmin'
DEFAULT_ADMIN_PASSWORD = 'Pa$$w0rd1975'

DEFAULT_TAGS = {
    'who rocks': 'python',
    'where': 'on azure',
}


@dataclass
class AzureEnvironment:
    """Service principal identity read from the environment"""
    tenant_id: str
    client_id: str
    client_secret: str
    subscription_id: str


@dataclass
class VMDefinition:
    """Image and name of one sample VM"""
    name: str
    publisher: str
    offer: str
    sku: str
    version: str = 'latest'


DEFAULT_VMS = [
    VMDefinition('linuxVM', 'Canonical', '0001-com-ubuntu-server-jammy', '22_04-lts'),
    VMDefinition('windowsVM', 'MicrosoftWindowsServer', 'WindowsServer', '2019-Datacenter'),
]

VM_REQUIRED_KEYS = ('name', 'publisher', 'offer', 'sku')


def get_env_var_or_exit(var_name: str) -> str:
    """Return the value of an environment variable, exit when it is not defined"""
    value = os.getenv(var_name)
    if not value:
        print(f"Missing environment variable '{var_name}'")
        sys.exit(1)
    return value


def load_azure_environment(env_file: str = '.env') -> AzureEnvironment:
    """Read the service principal values, loading an optional .env first"""
    if os.path.exists(env_file):
        load_dotenv(env_file, override=False)

    tenant_id, client_id, client_secret, subscription_id = (
        get_env_var_or_exit(name) for name in AZURE_ENV_VARS
    )
    return AzureEnvironment(
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret,
        subscription_id=subscription_id,
    )


def get_credential(env: AzureEnvironment) -> ClientSecretCredential:
    return ClientSecretCredential(
        tenant_id=env.tenant_id,
        client_id=env.client_id,
        client_secret=env.client_secret,
    )


def load_secrets(secret_file: str = '.env.secret') -> Dict[str, str]:
    """Load VM admin credentials from .env.secret file"""
    if os.path.exists(secret_file):
        load_dotenv(secret_file)
        return {
            'admin_username': os.getenv('ADMIN_USERNAME', DEFAULT_ADMIN_USERNAME),
            'admin_password': os.getenv('ADMIN_PASSWORD', DEFAULT_ADMIN_PASSWORD)
        }
    else:
        print(f"Warning: {secret_file} not found. Using default credentials.")
        return {
            'admin_username': DEFAULT_ADMIN_USERNAME,
            'admin_password': DEFAULT_ADMIN_PASSWORD
        }


def load_config(config_file: str = 'config.yaml') -> Dict:
    """Load configuration from a YAML file"""
    if os.path.exists(config_file):
        with open(config_file, 'r') as f:
            return yaml.safe_load(f) or {}
    else:
        print(f"Warning: {config_file} not found. Using default configuration.")
        return {}


def generate_storage_account_name(base_name: str, suffix_length: int = 8) -> str:
    """Build a globally unique storage account name.

    Storage account names are 3-24 characters, lower-case letters and digits.
    """
    clean_name = re.sub(r'[^a-z0-9]', '', base_name.lower())
    if len(clean_name) < 3:
        clean_name = 'vmsample'

    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=suffix_length))
    return f"{clean_name[:24 - suffix_length]}{suffix}"


def _parse_vms(entries: Optional[List[Dict]]) -> List[VMDefinition]:
    if not entries:
        return [VMDefinition(**vars(vm)) for vm in DEFAULT_VMS]
    vms = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"vms[{index}] in configuration must be a mapping, got {entry!r}")
        missing = [key for key in VM_REQUIRED_KEYS if not entry.get(key)]
        if missing:
            raise ValueError(f"vms[{index}] in configuration is missing: {', '.join(missing)}")
        unknown = sorted(set(entry) - set(VM_REQUIRED_KEYS) - {'version'})
        if unknown:
            raise ValueError(f"vms[{index}] in configuration has unknown keys: {', '.join(unknown)}")
        vms.append(VMDefinition(**entry))
    return vms


@dataclass
class SampleConfig:
    """Sample configuration parameters"""
    config_file: str = 'config.yaml'
    secret_file: str = '.env.secret'
    group_name: str = None
    location: str = None
    storage_account_name: str = None
    container_name: str = None
    vnet_name: str = None
    subnet_name: str = None
    nsg_name: str = None
    vnet_address_prefix: str = None
    subnet_address_prefix: str = None
    vm_size: str = None
    managed_disks: bool = None
    dns_label_prefix: str = None
    admin_username: str = None
    admin_password: str = None
    tags: Dict[str, str] = None
    vms: List[VMDefinition] = field(default=None)
    log_dir: str = None

    def __post_init__(self):
        config_data = load_config(self.config_file)
        secrets_data = load_secrets(self.secret_file)

        self.group_name = self.group_name or config_data.get('group_name', 'sample-group1')
        self.location = self.location or config_data.get('location', 'eastus')
        self.storage_account_name = (
            self.storage_account_name
            or config_data.get('storage_account_name')
            or generate_storage_account_name(config_data.get('storage_account_prefix', 'pythonsample'))
        )
        self.container_name = self.container_name or config_data.get('container_name', 'vhds')
        self.vnet_name = self.vnet_name or config_data.get('vnet_name', 'vNet')
        self.subnet_name = self.subnet_name or config_data.get('subnet_name', 'subnet')
        self.nsg_name = self.nsg_name or config_data.get('nsg_name', 'sample-nsg')
        self.vnet_address_prefix = self.vnet_address_prefix or config_data.get('vnet_address_prefix', '10.0.0.0/16')
        self.subnet_address_prefix = self.subnet_address_prefix or config_data.get('subnet_address_prefix', '10.0.0.0/24')
        self.vm_size = self.vm_size or config_data.get('vm_size', 'Standard_B2s')
        self.managed_disks = self.managed_disks if self.managed_disks is not None else config_data.get('managed_disks', True)
        self.dns_label_prefix = self.dns_label_prefix or config_data.get('dns_label_prefix', 'azuresamplese')
        self.log_dir = self.log_dir or config_data.get('log_dir', 'var/logs')

        self.admin_username = self.admin_username or secrets_data['admin_username']
        self.admin_password = self.admin_password or secrets_data['admin_password']

        if self.tags is None:
            self.tags = config_data.get('tags') or dict(DEFAULT_TAGS)

        if self.vms is None:
            self.vms = _parse_vms(config_data.get('vms'))

    def vhd_uri(self, blob_name: str) -> str:
        """URI of an unmanaged disk blob in the sample storage account"""
        return f"https://{self.storage_account_name}.blob.core.windows.net/{self.container_name}/{blob_name}.vhd"

    def vm_names(self) -> List[str]:
        return [vm.name for vm in self.vms]
