"""
Azure VM sample manager.

Provisions a resource group, storage account, virtual network and subnet,
creates the sample VMs in parallel, runs a fixed sequence of operations on
each VM, lists the VMs of the subscription and tears everything down.

Requirements:
- A service principal exported as AZURE_TENANT_ID, AZURE_CLIENT_ID,
  AZURE_CLIENT_SECRET and AZURE_SUBSCRIPTION_ID
- Python packages: azure-core, azure-identity, azure-mgmt-compute, azure-mgmt-network,
  azure-mgmt-resource, azure-mgmt-storage, python-dotenv, pyyaml
"""

import os
import sys
import time
import logging
import concurrent.futures
from datetime import datetime
from dataclasses import dataclass
from typing import Callable, Iterable, List, Tuple

from azure.core.exceptions import AzureError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.compute.models import (
    VirtualMachine, HardwareProfile, StorageProfile, ImageReference, OSDisk,
    DataDisk, VirtualHardDisk, ManagedDiskParameters, OSProfile,
    NetworkProfile, NetworkInterfaceReference, DiskCreateOptionTypes,
    StorageAccountTypes
)
from azure.mgmt.network.models import (
    AddressSpace, NetworkInterface, NetworkInterfaceIPConfiguration,
    NetworkSecurityGroup, SecurityRule, PublicIPAddress,
    PublicIPAddressDnsSettings, PublicIPAddressSku, VirtualNetwork, Subnet
)
from azure.mgmt.storage.models import (
    StorageAccountCreateParameters, Sku, SkuName, Kind
)

from .config import SampleConfig, VMDefinition


DEFAULT_OS_DISK_SIZE_GB = 256
OS_DISK_GROWTH_GB = 10
DATA_DISK_SIZE_GB = 1

# Inbound ports opened on the sample NICs: name, port, priority
INBOUND_RULES = [
    ('AllowSSH', '22', 1000),
    ('AllowRDP', '3389', 1001),
]


class SampleError(Exception):
    """A management API call of the sample failed"""


@dataclass
class AzureClients:
    """Management clients, one per Azure resource provider"""
    resource: ResourceManagementClient
    storage: StorageManagementClient
    network: NetworkManagementClient
    compute: ComputeManagementClient

    @classmethod
    def from_credential(cls, credential, subscription_id: str) -> 'AzureClients':
        return cls(
            resource=ResourceManagementClient(credential, subscription_id),
            storage=StorageManagementClient(credential, subscription_id),
            network=NetworkManagementClient(credential, subscription_id),
            compute=ComputeManagementClient(credential, subscription_id),
        )


def setup_logging(log_dir: str = 'var/logs', verbose: bool = False):
    """Setup logging configuration"""
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(log_dir, 'azure-vm-sample.log')),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Reduce Azure SDK logging verbosity
    logging.getLogger('azure').setLevel(logging.WARNING)
    logging.getLogger('azure.core.pipeline.policies.http_logging_policy').setLevel(logging.WARNING)
    logging.getLogger('azure.mgmt').setLevel(logging.WARNING)
    logging.getLogger('azure.identity').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def format_duration(seconds: float) -> str:
    """Format duration in a human-readable way"""
    if seconds < 60:
        return f"{seconds:.1f} seconds"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f} minutes ({seconds:.1f} seconds)"
    else:
        hours = seconds / 3600
        minutes = (seconds % 3600) / 60
        return f"{hours:.1f} hours, {minutes:.1f} minutes ({seconds:.1f} seconds)"


def format_vm(vm: VirtualMachine) -> str:
    """Describe a virtual machine: name, ID, type, location and tags"""
    if vm.tags:
        tags = ''.join(f"\t\t{key} = {value}\n" for key, value in vm.tags.items())
    else:
        tags = "\t\tNo tags yet\n"

    return (
        f"Virtual machine '{vm.name}'\n"
        f"\tID: {vm.id}\n"
        f"\tType: {vm.type}\n"
        f"\tLocation: {vm.location}\n"
        f"\tTags:\n{tags}"
    )


def run_concurrently(func: Callable, items: Iterable) -> list:
    """Call func once per item in parallel and wait for all of them.

    Every call runs to completion; the first failure is raised afterwards.
    """
    items = list(items)
    if not items:
        return []

    errors = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(items)) as executor:
        futures = [executor.submit(func, item) for item in items]
        for future in concurrent.futures.as_completed(futures):
            exception = future.exception()
            if exception:
                errors.append(exception)

    if errors:
        raise errors[0]
    return [future.result() for future in futures]


class AzureSampleManager:
    """Drives the VM sample against the Azure management API"""

    def __init__(self, clients: AzureClients, config: SampleConfig):
        self.clients = clients
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.resource_group_created = False
        self.network_security_group = None

    def _log_operation_start(self, operation: str) -> float:
        """Log operation start and return start time"""
        start_time = time.time()
        self.logger.info(f"🚀 Starting {operation} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        return start_time

    def _log_operation_end(self, operation: str, start_time: float):
        """Log operation completion with duration"""
        duration = time.time() - start_time
        self.logger.info(f"✅ {operation} completed in {format_duration(duration)}")

    # Shared resources

    def create_resource_group(self):
        rg_name = self.config.group_name
        self.logger.info(f"\tCreate resource group '{rg_name}'...")
        try:
            self.clients.resource.resource_groups.create_or_update(
                rg_name, {'location': self.config.location}
            )
        except AzureError as e:
            raise SampleError(f"resource_groups.create_or_update failed for resource group '{rg_name}': {e}") from e
        self.resource_group_created = True
        self.logger.info(f"\tCreated resource group '{rg_name}' successfully")

    def create_storage_account(self):
        account_name = self.config.storage_account_name
        self.logger.info(f"\tCreate storage account '{account_name}'...")
        storage_params = StorageAccountCreateParameters(
            sku=Sku(name=SkuName.STANDARD_LRS),
            kind=Kind.STORAGE_V2,
            location=self.config.location
        )
        try:
            operation = self.clients.storage.storage_accounts.begin_create(
                self.config.group_name, account_name, storage_params
            )
            operation.result()
        except AzureError as e:
            raise SampleError(f"storage_accounts.begin_create failed for storage account '{account_name}': {e}") from e
        self.logger.info(f"\tCreated storage account '{account_name}' successfully")

    def create_virtual_network(self):
        vnet_name = self.config.vnet_name
        self.logger.info(f"\tCreate virtual network '{vnet_name}'...")
        vnet_params = VirtualNetwork(
            location=self.config.location,
            address_space=AddressSpace(address_prefixes=[self.config.vnet_address_prefix])
        )
        try:
            operation = self.clients.network.virtual_networks.begin_create_or_update(
                self.config.group_name, vnet_name, vnet_params
            )
            operation.result()
        except AzureError as e:
            raise SampleError(f"virtual_networks.begin_create_or_update failed for '{vnet_name}': {e}") from e
        self.logger.info(f"\tCreated virtual network '{vnet_name}' successfully")

    def create_network_security_group(self) -> NetworkSecurityGroup:
        """Create the security group shared by the sample NICs.

        Standard public addresses drop inbound traffic unless a security
        group allows it, so SSH and RDP are opened here.
        """
        nsg_name = self.config.nsg_name
        self.logger.info(f"\tCreate network security group '{nsg_name}'...")
        nsg_params = NetworkSecurityGroup(
            location=self.config.location,
            security_rules=[
                SecurityRule(
                    name=rule_name,
                    protocol='Tcp',
                    source_address_prefix='*',
                    source_port_range='*',
                    destination_address_prefix='*',
                    destination_port_range=port,
                    access='Allow',
                    direction='Inbound',
                    priority=priority
                )
                for rule_name, port, priority in INBOUND_RULES
            ]
        )
        try:
            operation = self.clients.network.network_security_groups.begin_create_or_update(
                self.config.group_name, nsg_name, nsg_params
            )
            self.network_security_group = operation.result()
        except AzureError as e:
            raise SampleError(f"network_security_groups.begin_create_or_update failed for '{nsg_name}': {e}") from e
        self.logger.info(f"\tCreated network security group '{nsg_name}' successfully")
        return self.network_security_group

    def create_subnet(self) -> Subnet:
        """Create the subnet and return it as read back from the service"""
        rg_name = self.config.group_name
        vnet_name = self.config.vnet_name
        subnet_name = self.config.subnet_name

        self.logger.info(f"\tCreate subnet '{subnet_name}'...")
        try:
            operation = self.clients.network.subnets.begin_create_or_update(
                rg_name, vnet_name, subnet_name,
                Subnet(address_prefix=self.config.subnet_address_prefix)
            )
            operation.result()
        except AzureError as e:
            raise SampleError(f"subnets.begin_create_or_update failed for '{subnet_name}': {e}") from e
        self.logger.info(f"\tCreated subnet '{subnet_name}'")

        self.logger.info(f"\tGet subnet info for subnet '{subnet_name}'...")
        try:
            return self.clients.network.subnets.get(rg_name, vnet_name, subnet_name)
        except AzureError as e:
            raise SampleError(f"subnets.get failed for subnet '{subnet_name}': {e}") from e

    def create_needed_resources(self) -> Subnet:
        """Create all common resources needed before creating VMs.

        Each step depends on the previous one, so they run in order.
        """
        start = self._log_operation_start("creation of needed resources")
        self.logger.info("Create needed resources")
        self.create_resource_group()
        self.create_storage_account()
        self.create_virtual_network()
        self.create_network_security_group()
        subnet = self.create_subnet()
        self._log_operation_end("Creation of needed resources", start)
        return subnet

    # VM creation

    def create_pip_and_nic(self, vm_name: str, subnet: Subnet) -> Tuple[PublicIPAddress, NetworkInterface]:
        """Create a public IP address and a network interface in an existing subnet.

        Returns the public address and a network interface ready to be used to
        create a virtual machine.
        """
        rg_name = self.config.group_name
        network = self.clients.network

        self.logger.info(f"Create PIP and NIC for '{vm_name}' VM...")
        ip_name = f"pip-{vm_name}"
        self.logger.info(f"\tCreate public IP address '{ip_name}'...")
        pip_params = PublicIPAddress(
            location=self.config.location,
            sku=PublicIPAddressSku(name='Standard'),
            public_ip_allocation_method='Static',
            dns_settings=PublicIPAddressDnsSettings(
                domain_name_label=f"{self.config.dns_label_prefix}-{vm_name[:5].lower()}"
            )
        )
        try:
            network.public_ip_addresses.begin_create_or_update(rg_name, ip_name, pip_params).result()
        except AzureError as e:
            raise SampleError(f"public_ip_addresses.begin_create_or_update '{ip_name}' failed: {e}") from e
        self.logger.info(f"\tCreated public IP address {ip_name}")

        self.logger.info(f"\tGet public IP address info for '{ip_name}'...")
        try:
            public_ip = network.public_ip_addresses.get(rg_name, ip_name)
        except AzureError as e:
            raise SampleError(f"public_ip_addresses.get for IP '{ip_name}' failed: {e}") from e

        nic_name = f"nic-{vm_name}"
        self.logger.info(f"\tCreate NIC '{nic_name}'...")
        nic_params = NetworkInterface(
            location=self.config.location,
            ip_configurations=[
                NetworkInterfaceIPConfiguration(
                    name=f"IPconfig-{vm_name}",
                    private_ip_allocation_method='Dynamic',
                    public_ip_address=public_ip,
                    subnet=subnet
                )
            ],
            network_security_group=self.network_security_group
        )
        try:
            network.network_interfaces.begin_create_or_update(rg_name, nic_name, nic_params).result()
        except AzureError as e:
            raise SampleError(f"network_interfaces.begin_create_or_update for NIC '{nic_name}' failed: {e}") from e
        self.logger.info(f"\tCreated NIC '{nic_name}' successfully")

        self.logger.info(f"\tGet NIC info for {nic_name}...")
        try:
            nic = network.network_interfaces.get(rg_name, nic_name)
        except AzureError as e:
            raise SampleError(f"network_interfaces.get for NIC '{nic_name}' failed: {e}") from e

        return public_ip, nic

    def build_vm_parameters(self, vm: VMDefinition, nic_id: str) -> VirtualMachine:
        """Build the VirtualMachine argument for creating or updating a VM"""
        if self.config.managed_disks:
            os_disk = OSDisk(
                name=f"osDisk-{vm.name}",
                create_option=DiskCreateOptionTypes.FROM_IMAGE,
                managed_disk=ManagedDiskParameters(storage_account_type=StorageAccountTypes.STANDARD_LRS)
            )
        else:
            os_disk = OSDisk(
                name='osDisk',
                create_option=DiskCreateOptionTypes.FROM_IMAGE,
                vhd=VirtualHardDisk(uri=self.config.vhd_uri(vm.name))
            )

        return VirtualMachine(
            location=self.config.location,
            hardware_profile=HardwareProfile(vm_size=self.config.vm_size),
            storage_profile=StorageProfile(
                image_reference=ImageReference(
                    publisher=vm.publisher,
                    offer=vm.offer,
                    sku=vm.sku,
                    version=vm.version
                ),
                os_disk=os_disk
            ),
            os_profile=OSProfile(
                computer_name=vm.name,
                admin_username=self.config.admin_username,
                admin_password=self.config.admin_password
            ),
            network_profile=NetworkProfile(
                network_interfaces=[
                    NetworkInterfaceReference(id=nic_id, primary=True)
                ]
            )
        )

    def create_vm(self, vm: VMDefinition, subnet: Subnet) -> VirtualMachine:
        """Create a VM in the provided subnet"""
        public_ip, nic = self.create_pip_and_nic(vm.name, subnet)

        self.logger.info(f"Create '{vm.name}' VM...")
        vm_params = self.build_vm_parameters(vm, nic.id)
        try:
            result = self.clients.compute.virtual_machines.begin_create_or_update(
                self.config.group_name, vm.name, vm_params
            ).result()
        except AzureError as e:
            raise SampleError(f"create_vm failed for '{vm.name}': {e}") from e

        fqdn = public_ip.dns_settings.fqdn if public_ip.dns_settings else public_ip.ip_address
        print(f"Now you can connect to '{vm.name}' VM via 'ssh {self.config.admin_username}@{fqdn}' "
              f"with password '{self.config.admin_password}'")
        return result

    def create_vms(self, subnet: Subnet) -> List[VirtualMachine]:
        """Create all configured VMs in parallel and wait for every one of them"""
        start = self._log_operation_start("VM creation")
        results = run_concurrently(lambda vm: self.create_vm(vm, subnet), self.config.vms)
        self._log_operation_end("VM creation", start)
        return results

    # VM operations

    def get_vm(self, vm_name: str) -> VirtualMachine:
        self.logger.info(f"Get VM '{vm_name}' by name")
        try:
            vm = self.clients.compute.virtual_machines.get(
                self.config.group_name, vm_name, expand='instanceView'
            )
        except AzureError as e:
            raise SampleError(f"Get failed for '{vm_name}': {e}") from e
        print(format_vm(vm))
        return vm

    def _update_vm(self, vm_name: str, vm: VirtualMachine) -> VirtualMachine:
        try:
            return self.clients.compute.virtual_machines.begin_create_or_update(
                self.config.group_name, vm_name, vm
            ).result()
        except AzureError as e:
            raise SampleError(f"virtual_machines.begin_create_or_update failed for '{vm_name}': {e}") from e

    def update_vm(self, vm_name: str, vm: VirtualMachine):
        self.logger.info(f"Tag VM '{vm_name}' (via CreateOrUpdate operation)")
        vm.tags = dict(self.config.tags)
        self._update_vm(vm_name, vm)

    def attach_data_disk(self, vm_name: str, vm: VirtualMachine):
        self.logger.info(f"Attach data disk to VM '{vm_name}' (via CreateOrUpdate operation)")
        if self.config.managed_disks:
            data_disk = DataDisk(
                lun=0,
                name=f"dataDisk-{vm_name}",
                create_option=DiskCreateOptionTypes.EMPTY,
                disk_size_gb=DATA_DISK_SIZE_GB,
                managed_disk=ManagedDiskParameters(storage_account_type=StorageAccountTypes.STANDARD_LRS)
            )
        else:
            data_disk = DataDisk(
                lun=0,
                name='dataDisk',
                vhd=VirtualHardDisk(uri=self.config.vhd_uri(f"dataDisks-{vm_name}")),
                create_option=DiskCreateOptionTypes.EMPTY,
                disk_size_gb=DATA_DISK_SIZE_GB
            )
        vm.storage_profile.data_disks = [data_disk]
        self._update_vm(vm_name, vm)

    def detach_data_disks(self, vm_name: str, vm: VirtualMachine):
        self.logger.info(f"Detach data disks from VM '{vm_name}' (via CreateOrUpdate operation)")
        vm.storage_profile.data_disks = []
        self._update_vm(vm_name, vm)

    def update_os_disk_size(self, vm_name: str, vm: VirtualMachine):
        """Grow the OS disk; the VM has to be deallocated first"""
        self.logger.info(f"Update OS disk size for VM '{vm_name}' (via Deallocate and CreateOrUpdate operations)")
        os_disk = vm.storage_profile.os_disk
        if os_disk.disk_size_gb is None:
            os_disk.disk_size_gb = 0

        try:
            self.clients.compute.virtual_machines.begin_deallocate(self.config.group_name, vm_name).result()
        except AzureError as e:
            raise SampleError(f"Deallocate failed for '{vm_name}': {e}") from e

        if os_disk.disk_size_gb <= 0:
            os_disk.disk_size_gb = DEFAULT_OS_DISK_SIZE_GB
        os_disk.disk_size_gb += OS_DISK_GROWTH_GB
        self._update_vm(vm_name, vm)

    def _power_operation(self, label: str, method: str, vm_name: str):
        self.logger.info(f"{label} VM '{vm_name}'...")
        poller_factory = getattr(self.clients.compute.virtual_machines, method)
        try:
            poller_factory(self.config.group_name, vm_name).result()
        except AzureError as e:
            raise SampleError(f"virtual_machines.{method} failed for '{vm_name}': {e}") from e

    def start_vm(self, vm_name: str):
        self._power_operation('Start', 'begin_start', vm_name)

    def restart_vm(self, vm_name: str):
        self._power_operation('Restart', 'begin_restart', vm_name)

    def stop_vm(self, vm_name: str):
        self._power_operation('Stop', 'begin_power_off', vm_name)

    def vm_operations(self, vm_name: str):
        """Perform the sample operations on one VM, strictly in order"""
        self.logger.info(f"Performing various operations on '{vm_name}' VM")
        vm = self.get_vm(vm_name)
        self.update_vm(vm_name, vm)
        self.attach_data_disk(vm_name, vm)
        self.detach_data_disks(vm_name, vm)
        self.update_os_disk_size(vm_name, vm)
        self.start_vm(vm_name)
        self.restart_vm(vm_name)
        self.stop_vm(vm_name)

    def run_vm_operations(self):
        start = self._log_operation_start("VM operations")
        run_concurrently(self.vm_operations, self.config.vm_names())
        self._log_operation_end("VM operations", start)

    # Listing

    def list_vms(self) -> List[VirtualMachine]:
        self.logger.info("List VMs in subscription...")
        try:
            vms = list(self.clients.compute.virtual_machines.list_all())
        except AzureError as e:
            raise SampleError(f"ListAll failed: {e}") from e

        if vms:
            print("VMs in subscription")
            for vm in vms:
                print(format_vm(vm))
        else:
            print("There are no VMs in this subscription")
        return vms

    # Teardown

    def delete_vm(self, vm_name: str):
        self.logger.info(f"Delete '{vm_name}' virtual machine...")
        try:
            self.clients.compute.virtual_machines.begin_delete(self.config.group_name, vm_name).result()
        except AzureError as e:
            raise SampleError(f"virtual_machines.begin_delete failed for '{vm_name}': {e}") from e

    def delete_vms(self):
        run_concurrently(self.delete_vm, self.config.vm_names())

    def delete_resource_group(self):
        """Delete the resource group and everything left in it"""
        rg_name = self.config.group_name
        start = self._log_operation_start(f"resource group '{rg_name}' deletion")
        self.logger.info("Delete resource group...")
        try:
            self.clients.resource.resource_groups.begin_delete(rg_name).result()
        except AzureError as e:
            raise SampleError(f"Delete failed for resource group '{rg_name}': {e}") from e
        self.resource_group_created = False
        self._log_operation_end(f"Resource group '{rg_name}' deletion", start)
