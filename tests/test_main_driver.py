#!/usr/bin/env python3
"""
Unit tests for the job driver and the command line entry point.
"""

import io
import json
import tempfile
import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path to import ldap_groupops modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_directory import FakeDirectory, GROUPS_OU
from ldap_groupops.errors import GatewayUnavailableError
from ldap_groupops.main import JobDriver, JobState, health_check, load_gateway, load_job, main
from ldap_groupops.models import Severity
from ldap_groupops.output import JsonLinesEmitter
from ldap_groupops.params import ParameterError


class TestJobDriver(unittest.TestCase):
    """Test cases for JobDriver class."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'ldap': {
                'server_url': 'ldaps://dc01.example.com',
                'bind_dn': 'CN=svc,DC=example,DC=com',
                'bind_password': 'test_password',
                'group_base_dn': GROUPS_OU,
            },
            'error_handling': {'max_retries': 0, 'retry_wait_seconds': 0},
            'job': {'max_items': 50},
            'notifications': {'enable_email': False},
        }
        self.directory = FakeDirectory()
        self.alice = self.directory.add_user('alice')
        self.bob = self.directory.add_user('bob')
        self.grp_a = self.directory.add_group('GrpA', members=[self.alice])
        self.emitter = JsonLinesEmitter(stream=io.StringIO())

    def driver(self):
        return JobDriver(self.config, progress=self.emitter.progress,
                         gateway_factory=lambda config: self.directory)

    def test_successful_job_walks_every_state(self):
        driver = self.driver()
        result = driver.run({'operation': 'addMembers',
                             'parameters': {'targetGroups': 'GrpA', 'members': 'alice,bob'}})

        self.assertEqual(result.severity, Severity.SUCCESS)
        self.assertEqual(driver.state_history, [
            JobState.RECEIVED, JobState.VALIDATING_PREREQS, JobState.DISPATCHING,
            JobState.EXECUTING, JobState.REPORTING, JobState.DONE,
        ])
        self.assertEqual(self.directory.disconnect_count, 1)

    def test_progress_events_are_monotonic_and_end_at_one(self):
        self.driver().run({'operation': 'deleteGroup', 'parameters': {'targetGroups': 'GrpA'}})

        fractions = [event['progress'] for event in self.emitter.events if event['type'] == 'progress']
        self.assertEqual(fractions, sorted(fractions))
        self.assertEqual(fractions[0], 0.0)
        self.assertEqual(fractions[-1], 1.0)

    def test_gate_failure_is_single_error(self):
        driver = self.driver()
        result = driver.run({'operation': 'addMembers',
                             'parameters': {'targetGroups': 'GrpA,GrpMissing', 'members': 'bob'}})

        self.assertEqual(result.severity, Severity.ERROR)
        self.assertIn('GrpMissing', result.description)
        self.assertNotIn('result', result.to_dict())
        self.assertEqual(driver.state_history[-1], JobState.FAILED)
        self.assertEqual(self.directory.mutation_calls, [])

    def test_invalid_enum_makes_no_directory_changes(self):
        result = self.driver().run({'operation': 'setGroupScope',
                                    'parameters': {'targetGroups': 'GrpA', 'newScope': 'Forest'}})

        self.assertEqual(result.severity, Severity.ERROR)
        self.assertIn('newScope', result.description)
        self.assertEqual(self.directory.mutation_calls, [])

    def test_unknown_operation(self):
        driver = self.driver()
        result = driver.run({'operation': 'purgeGroup', 'parameters': {}})

        self.assertEqual(result.exit_code, 1)
        self.assertIn('Unknown operation', result.description)
        self.assertEqual(driver.state_history,
                         [JobState.RECEIVED, JobState.VALIDATING_PREREQS, JobState.DISPATCHING, JobState.FAILED])

    def test_unreachable_directory(self):
        self.directory.connect_error = 'Failed to connect to ldaps://dc01.example.com after 1 attempts'

        result = self.driver().run({'operation': 'deleteGroup', 'parameters': {'targetGroups': 'GrpA'}})

        self.assertEqual(result.severity, Severity.ERROR)
        self.assertEqual(result.exit_code, 1)
        self.assertTrue(result.description.startswith('Directory unavailable'))

    def test_gateway_unavailable_has_remediation(self):
        def factory(config):
            raise GatewayUnavailableError('Directory access layer could not be loaded',
                                          remediation='Install ldap3')

        driver = JobDriver(self.config, gateway_factory=factory)
        result = driver.run({'operation': 'deleteGroup', 'parameters': {'targetGroups': 'GrpA'}})

        self.assertEqual(result.severity, Severity.ERROR)
        self.assertIn('Install ldap3', result.description)

    def test_unexpected_error_becomes_error_result(self):
        self.directory.resolve_by_key = Mock(side_effect=KeyError('boom'))

        with self.assertLogs('ldap_groupops.main', level='ERROR'):
            result = self.driver().run({'operation': 'moveGroup',
                                        'parameters': {'targetGroups': 'GrpA', 'targetPath': GROUPS_OU}})

        self.assertEqual(result.severity, Severity.ERROR)
        self.assertTrue(result.description.startswith('Unexpected error'))
        self.assertEqual(self.directory.disconnect_count, 1)

    @patch('ldap_groupops.main.send_job_warning_notification')
    @patch('ldap_groupops.main.send_job_failure_notification')
    def test_warning_sends_warning_notification(self, mock_failure, mock_warning):
        result = self.driver().run({'operation': 'addMembers',
                                    'parameters': {'targetGroups': 'GrpA', 'members': 'bob,ghost'}})

        self.assertEqual(result.severity, Severity.WARNING)
        mock_failure.assert_not_called()
        mock_warning.assert_called_once()
        operation, description, failures, config = mock_warning.call_args.args
        self.assertEqual(operation, 'addMembers')
        self.assertEqual(len(failures), 1)
        self.assertIn('ghost', failures[0])

    @patch('ldap_groupops.main.send_job_failure_notification')
    def test_error_sends_failure_notification(self, mock_failure):
        self.driver().run({'operation': 'renameGroup', 'parameters': {}})
        mock_failure.assert_called_once()
        self.assertEqual(mock_failure.call_args.args[0], 'renameGroup')

    @patch('ldap_groupops.main.send_job_failure_notification', side_effect=RuntimeError('smtp down'))
    def test_notification_problem_does_not_change_result(self, mock_failure):
        result = self.driver().run({'operation': 'purgeGroup'})
        self.assertEqual(result.severity, Severity.ERROR)
        self.assertIn('Unknown operation', result.description)

    def test_load_gateway_reports_missing_library(self):
        with patch('ldap_groupops.main.importlib.import_module', side_effect=ImportError("No module named 'ldap3'")):
            with self.assertRaises(GatewayUnavailableError) as raised:
                load_gateway(self.config)
        self.assertIn('ldap3', raised.exception.remediation)


class TestJobFiles(unittest.TestCase):

    def write(self, text, suffix):
        handle = tempfile.NamedTemporaryFile('w', suffix=suffix, delete=False)
        handle.write(text)
        handle.close()
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def test_yaml_job(self):
        path = self.write("operation: deleteGroup\nparameters:\n  targetGroups: [GrpA, GrpB]\n", '.yaml')
        self.assertEqual(load_job(path), {'operation': 'deleteGroup',
                                          'parameters': {'targetGroups': ['GrpA', 'GrpB']}})

    def test_json_job(self):
        path = self.write(json.dumps({'operation': 'listMembers', 'parameters': {'targetGroups': 'GrpA'}}),
                          '.json')
        self.assertEqual(load_job(path)['operation'], 'listMembers')

    def test_job_from_stdin(self):
        with patch('sys.stdin', io.StringIO('operation: listMembers\n')):
            self.assertEqual(load_job('-'), {'operation': 'listMembers'})

    def test_missing_job_file(self):
        with self.assertRaises(ParameterError):
            load_job('/nonexistent/job.yaml')

    def test_job_must_be_mapping(self):
        path = self.write("- deleteGroup\n", '.yaml')
        with self.assertRaises(ParameterError):
            load_job(path)


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.config = {
            'ldap': {'server_url': 'ldap://dc01', 'bind_dn': 'CN=svc,DC=example,DC=com',
                     'bind_password': 'pw'},
            'logging': {},
            'error_handling': {},
            'notifications': {},
        }

    @patch('ldap_groupops.main.setup_logging')
    @patch('ldap_groupops.main.load_job')
    @patch('ldap_groupops.main.load_config')
    @patch('ldap_groupops.main.JobDriver')
    def test_exit_code_follows_severity(self, mock_driver, mock_load_config, mock_load_job, mock_setup):
        from ldap_groupops.models import JobResult
        mock_load_config.return_value = self.config
        mock_load_job.return_value = {'operation': 'deleteGroup'}
        mock_driver.return_value.run.return_value = JobResult(Severity.WARNING, 'Completed with errors')

        stdout = io.StringIO()
        with patch('sys.stdout', stdout):
            with self.assertRaises(SystemExit) as raised:
                main(['--config', 'config.yaml', '--job', 'job.yaml'])

        self.assertEqual(raised.exception.code, 0)
        envelope = json.loads(stdout.getvalue().strip().splitlines()[-1])
        self.assertEqual(envelope['code'], 2)
        self.assertEqual(envelope['severity'], 'warning')

    @patch('ldap_groupops.main.load_config')
    def test_configuration_error_exits_1(self, mock_load_config):
        from ldap_groupops.config import ConfigurationError
        mock_load_config.side_effect = ConfigurationError('Missing required LDAP field: bind_dn')

        stdout = io.StringIO()
        with patch('sys.stdout', stdout):
            with self.assertRaises(SystemExit) as raised:
                main(['--job', 'job.yaml'])

        self.assertEqual(raised.exception.code, 1)
        envelope = json.loads(stdout.getvalue())
        self.assertEqual(envelope['severity'], 'error')
        self.assertIn('bind_dn', envelope['description'])

    @patch('ldap_groupops.main.load_config')
    def test_health_check(self, mock_load_config):
        mock_load_config.return_value = self.config
        directory = FakeDirectory()

        status = health_check('config.yaml', gateway_factory=lambda config: directory)

        self.assertEqual(status['status'], 'healthy')
        self.assertEqual(status['checks']['ldap']['status'], 'pass')
        self.assertEqual(status['checks']['notifications']['status'], 'skip')
        self.assertEqual(directory.disconnect_count, 1)

    @patch('ldap_groupops.main.load_config')
    def test_health_check_unreachable(self, mock_load_config):
        mock_load_config.return_value = self.config
        directory = FakeDirectory()
        directory.connect_error = 'timed out'

        status = health_check('config.yaml', gateway_factory=lambda config: directory)

        self.assertEqual(status['status'], 'unhealthy')
        self.assertIn('timed out', status['checks']['ldap']['message'])


if __name__ == '__main__':
    unittest.main()
