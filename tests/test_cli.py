"""Unit tests for the command line entry point and the sample sequence."""

from unittest.mock import Mock, patch

import pytest

from azure_vm_sample import cli
from azure_vm_sample.config import AzureEnvironment
from azure_vm_sample.manager import SampleError


@pytest.fixture
def mock_manager():
    manager = Mock()
    manager.resource_group_created = True
    manager.config.group_name = 'sample-group1'
    manager.config.vm_names.return_value = ['linuxVM', 'windowsVM']
    return manager


def _steps(manager):
    return [c[0] for c in manager.mock_calls if not c[0].startswith(('logger', 'config'))]


class TestRunSample:
    """Test the ordering of the sample sequence."""

    def test_full_sequence(self, mock_manager, capsys):
        cli.run_sample(mock_manager, confirm=False)

        assert _steps(mock_manager) == [
            'create_needed_resources',
            'create_vms',
            'run_vm_operations',
            'list_vms',
            'delete_vms',
            'delete_resource_group',
        ]
        mock_manager.create_vms.assert_called_once_with(mock_manager.create_needed_resources.return_value)
        assert "Your VMs 'linuxVM', 'windowsVM' have been created successfully" in capsys.readouterr().out

    @patch('builtins.input', return_value='')
    def test_waits_for_enter(self, mock_input, mock_manager):
        cli.run_sample(mock_manager, confirm=True)

        mock_input.assert_called_once()
        assert 'Press enter to delete' in mock_input.call_args[0][0]
        mock_manager.delete_resource_group.assert_called_once()

    @patch('builtins.input', side_effect=EOFError)
    def test_closed_stdin_proceeds_with_teardown(self, mock_input, mock_manager):
        cli.run_sample(mock_manager, confirm=True)

        mock_manager.delete_vms.assert_called_once()
        mock_manager.delete_resource_group.assert_called_once()

    @patch('builtins.input', side_effect=KeyboardInterrupt)
    def test_interrupt_cleans_up_resource_group(self, mock_input, mock_manager):
        with pytest.raises(KeyboardInterrupt):
            cli.run_sample(mock_manager, confirm=True)

        mock_manager.delete_vms.assert_not_called()
        mock_manager.delete_resource_group.assert_called_once()

    @patch('builtins.input')
    def test_keep_skips_teardown(self, mock_input, mock_manager):
        cli.run_sample(mock_manager, confirm=True, keep=True)

        mock_input.assert_not_called()
        mock_manager.delete_vms.assert_not_called()
        mock_manager.delete_resource_group.assert_not_called()

    def test_failure_cleans_up_resource_group(self, mock_manager):
        mock_manager.create_vms.side_effect = SampleError('create_vm failed')

        with pytest.raises(SampleError, match='create_vm failed'):
            cli.run_sample(mock_manager, confirm=False)

        mock_manager.run_vm_operations.assert_not_called()
        mock_manager.delete_resource_group.assert_called_once()

    def test_failure_before_resource_group_skips_cleanup(self, mock_manager):
        mock_manager.resource_group_created = False
        mock_manager.create_needed_resources.side_effect = SampleError('denied')

        with pytest.raises(SampleError):
            cli.run_sample(mock_manager, confirm=False)

        mock_manager.delete_resource_group.assert_not_called()

    def test_cleanup_failure_keeps_original_error(self, mock_manager):
        mock_manager.list_vms.side_effect = SampleError('ListAll failed')
        mock_manager.delete_resource_group.side_effect = SampleError('Delete failed')

        with pytest.raises(SampleError, match='ListAll failed'):
            cli.run_sample(mock_manager, confirm=False)

        mock_manager.logger.error.assert_called_once()


class TestArguments:
    """Test command line parsing."""

    def test_defaults(self):
        args = cli.parse_args([])
        assert args.config == 'config.yaml'
        assert args.managed_disks is None
        assert args.yes is False
        assert args.keep is False

    def test_disk_mode(self):
        assert cli.parse_args(['--managed-disks']).managed_disks is True
        assert cli.parse_args(['--vhd-disks']).managed_disks is False

    def test_disk_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.parse_args(['--managed-disks', '--vhd-disks'])


class TestMain:
    """Test main() wiring and exit status."""

    @pytest.fixture
    def patched(self, tmp_path, clean_env):
        env = AzureEnvironment('tenant', 'client', 'secret', 'sub')
        with patch.object(cli, 'load_azure_environment', return_value=env), \
                patch.object(cli, 'get_credential') as mock_credential, \
                patch.object(cli.AzureClients, 'from_credential') as mock_from_credential, \
                patch.object(cli, 'setup_logging'), \
                patch.object(cli, 'run_sample') as mock_run:
            yield {
                'credential': mock_credential,
                'from_credential': mock_from_credential,
                'run_sample': mock_run,
                'argv': [
                    '--config', str(tmp_path / 'missing.yaml'),
                    '--secrets', str(tmp_path / 'missing.secret'),
                ],
            }

    def test_success(self, patched):
        assert cli.main(patched['argv'] + ['--yes', '--location', 'westus2']) == 0

        patched['from_credential'].assert_called_once_with(patched['credential'].return_value, 'sub')
        manager = patched['run_sample'].call_args[0][0]
        assert manager.config.location == 'westus2'
        assert patched['run_sample'].call_args[1] == {'confirm': False, 'keep': False}

    def test_failure_returns_one(self, patched, capsys):
        patched['run_sample'].side_effect = SampleError('Deallocate failed for linuxVM')

        assert cli.main(patched['argv']) == 1
        assert 'Error: Deallocate failed for linuxVM' in capsys.readouterr().out

    def test_interrupt_returns_one(self, patched, capsys):
        patched['run_sample'].side_effect = KeyboardInterrupt

        assert cli.main(patched['argv']) == 1
        assert 'Interrupted' in capsys.readouterr().out

    def test_invalid_configuration_returns_one(self, patched, tmp_path, capsys):
        config_file = tmp_path / 'bad.yaml'
        config_file.write_text("vms:\n  - name: onlyVM\n")

        assert cli.main(['--config', str(config_file), '--secrets', str(tmp_path / 'missing')]) == 1
        assert 'Configuration error' in capsys.readouterr().out
        patched['run_sample'].assert_not_called()
