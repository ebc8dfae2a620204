#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_groupops.notifications import (
    MAX_LISTED_FAILURES, send_email, send_job_failure_notification, send_job_warning_notification,
)


class TestSendEmail(unittest.TestCase):

    def setUp(self):
        self.config = {
            'enable_email': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts',
            'smtp_password': 'pw',
            'email_from': 'groupops@example.com',
            'email_to': ['admin@example.com', 'ops@example.com'],
        }

    def test_disabled(self):
        self.config['enable_email'] = False
        with patch('ldap_groupops.notifications.smtplib.SMTP') as mock_smtp:
            self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.assert_not_called()

    @patch('ldap_groupops.notifications.smtplib.SMTP')
    def test_send_with_starttls_and_login(self, mock_smtp):
        self.assertTrue(send_email('Subject', 'Body', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server = mock_smtp.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts', 'pw')
        sender, recipients, message = server.sendmail.call_args.args
        self.assertEqual(sender, 'groupops@example.com')
        self.assertEqual(recipients, ['admin@example.com', 'ops@example.com'])
        self.assertIn('Subject: Subject', message)
        server.quit.assert_called_once()

    @patch('ldap_groupops.notifications.smtplib.SMTP_SSL')
    def test_port_465_uses_ssl(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        self.config['email_to'] = 'admin@example.com'
        self.assertTrue(send_email('Subject', 'Body', self.config))
        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)
        self.assertEqual(mock_smtp_ssl.return_value.sendmail.call_args.args[1], ['admin@example.com'])

    @patch('ldap_groupops.notifications.smtplib.SMTP')
    def test_smtp_error_returns_false(self, mock_smtp):
        mock_smtp.return_value.sendmail.side_effect = smtplib.SMTPRecipientsRefused({})
        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.return_value.quit.assert_called_once()

    def test_missing_recipients_returns_false(self):
        self.config['email_to'] = []
        self.assertFalse(send_email('Subject', 'Body', self.config))


@patch('ldap_groupops.notifications.send_email', return_value=True)
class TestJobNotifications(unittest.TestCase):

    def setUp(self):
        self.config = {'enable_email': True, 'email_on_failure': True, 'email_on_warning': True}

    def test_failure_notification(self, mock_send):
        self.assertTrue(send_job_failure_notification(
            'moveGroup', "Container 'OU=Nope' does not exist", self.config, dry_run=False))

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'LDAP Group Ops Alert: moveGroup failed')
        self.assertIn("Result: Container 'OU=Nope' does not exist", body)
        self.assertIn('Dry run: no', body)
        self.assertNotIn('Failed items:', body)

    def test_failure_notification_disabled(self, mock_send):
        self.config['email_on_failure'] = False
        self.assertFalse(send_job_failure_notification('moveGroup', 'failed', self.config))
        mock_send.assert_not_called()

    def test_warning_notification_lists_failures(self, mock_send):
        failures = [f'user{i} (GrpA): not found' for i in range(MAX_LISTED_FAILURES + 3)]

        send_job_warning_notification('addMembers', 'Completed with errors', failures, self.config)

        subject, body, config = mock_send.call_args.args
        self.assertEqual(subject, 'LDAP Group Ops Warning: addMembers completed with errors')
        self.assertIn(f'{MAX_LISTED_FAILURES}. user{MAX_LISTED_FAILURES - 1} (GrpA): not found', body)
        self.assertNotIn(f'user{MAX_LISTED_FAILURES} (GrpA)', body)
        self.assertIn('... and 3 more', body)

    def test_warning_notification_off_by_default(self, mock_send):
        del self.config['email_on_warning']
        self.assertFalse(send_job_warning_notification('addMembers', 'Completed with errors', [], self.config))
        mock_send.assert_not_called()


if __name__ == '__main__':
    unittest.main()
