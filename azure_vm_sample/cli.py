"""Command line entry point running the whole VM sample"""

import sys
import logging
import argparse

from .config import SampleConfig, load_azure_environment, get_credential
from .manager import AzureClients, AzureSampleManager, SampleError, setup_logging


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Azure virtual machine management sample')

    # Configuration options (these override config.yaml values if provided)
    parser.add_argument('--config', default='config.yaml',
                        help='Path to the YAML configuration file')
    parser.add_argument('--secrets', default='.env.secret',
                        help='Path to the file holding ADMIN_USERNAME and ADMIN_PASSWORD')
    parser.add_argument('--group-name',
                        help='Resource group to create (overrides config.yaml)')
    parser.add_argument('--location',
                        help='Azure region (overrides config.yaml)')
    parser.add_argument('--vm-size',
                        help='VM size (overrides config.yaml)')
    disks = parser.add_mutually_exclusive_group()
    disks.add_argument('--managed-disks', dest='managed_disks', action='store_true', default=None,
                       help='Use managed disks for the OS and data disks')
    disks.add_argument('--vhd-disks', dest='managed_disks', action='store_false',
                       help='Store OS and data disks as VHD blobs in the sample storage account')
    parser.add_argument('--yes', '-y', action='store_true',
                        help='Do not wait for enter before deleting the resources')
    parser.add_argument('--keep', action='store_true',
                        help='Leave the VMs and the resource group in place')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable debug logging')
    return parser.parse_args(argv)


def wait_for_enter(prompt: str):
    """Block until enter is pressed; a closed stdin counts as enter"""
    try:
        input(prompt)
    except EOFError:
        print()


def run_sample(manager: AzureSampleManager, confirm: bool = True, keep: bool = False):
    """Run the sample sequence: provision, create VMs, operate, list, tear down"""
    try:
        subnet = manager.create_needed_resources()

        manager.create_vms(subnet)
        vm_list = ', '.join(f"'{name}'" for name in manager.config.vm_names())
        print(f"Your VMs {vm_list} have been created successfully")

        manager.run_vm_operations()
        manager.list_vms()

        if keep:
            print(f"Resources kept in resource group '{manager.config.group_name}'")
            return

        if confirm:
            wait_for_enter("Press enter to delete the VMs and other resources created in this sample...")

        manager.delete_vms()
    except (Exception, KeyboardInterrupt):
        if manager.resource_group_created and not keep:
            manager.logger.warning("Sample failed, deleting resource group to clean up")
            try:
                manager.delete_resource_group()
            except SampleError as cleanup_error:
                manager.logger.error(f"Cleanup failed: {cleanup_error}")
        raise

    manager.delete_resource_group()


def main(argv=None) -> int:
    """Main CLI interface"""
    args = parse_args(argv)

    env = load_azure_environment()

    try:
        config = SampleConfig(
            config_file=args.config,
            secret_file=args.secrets,
            group_name=args.group_name,
            location=args.location,
            vm_size=args.vm_size,
            managed_disks=args.managed_disks
        )
    except ValueError as e:
        print(f"❌ Configuration error: {e}")
        return 1

    setup_logging(config.log_dir, args.verbose)
    logger = logging.getLogger(__name__)

    clients = AzureClients.from_credential(get_credential(env), env.subscription_id)
    manager = AzureSampleManager(clients, config)

    logger.info(f"Resource group: {config.group_name}")
    logger.info(f"Location: {config.location}")
    logger.info(f"VMs: {', '.join(config.vm_names())}")

    try:
        run_sample(manager, confirm=not args.yes, keep=args.keep)
    except KeyboardInterrupt:
        print("❌ Interrupted")
        return 1
    except Exception as e:
        print(f"❌ Error: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
