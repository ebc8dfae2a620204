"""
Job driver for LDAP Group Ops.

Reads one job (an operation name and its parameters), checks that the
directory is reachable, dispatches to the operation handler and emits the
progress events and the terminal result as JSON lines on stdout.
"""

import sys
import json
import logging
import importlib
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Callable

import yaml

from ldap_groupops.config import load_config, ConfigurationError
from ldap_groupops.errors import DirectoryError, DirectoryConnectionError, GatewayUnavailableError
from ldap_groupops.logging_setup import setup_logging, audit_logger
from ldap_groupops.models import JobResult, OutcomeStatus, Severity
from ldap_groupops.notifications import send_job_failure_notification, send_job_warning_notification
from ldap_groupops.operations import HANDLERS, OperationContext
from ldap_groupops.output import JsonLinesEmitter, ProgressCallback, no_progress
from ldap_groupops.params import JobSettings, ParameterError, get_operation

logger = logging.getLogger(__name__)

GATEWAY_MODULE = 'ldap_groupops.ldap_client'


class JobState(Enum):
    RECEIVED = "received"
    VALIDATING_PREREQS = "validating_prereqs"
    DISPATCHING = "dispatching"
    EXECUTING = "executing"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


def gateway_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """The ``ldap`` section with the retry settings the gateway needs."""
    return dict(config.get('ldap', {}), error_handling=config.get('error_handling', {}))


def load_gateway(config: Dict[str, Any]):
    """
    Import the directory access layer and build a gateway.

    Raises:
        GatewayUnavailableError: If the LDAP library cannot be imported
    """
    try:
        module = importlib.import_module(GATEWAY_MODULE)
    except ImportError as e:
        raise GatewayUnavailableError(
            f"Directory access layer could not be loaded: {e}",
            remediation="Install ldap3 (pip install ldap3) and retry the job"
        )
    return module.DirectoryGateway(gateway_config(config))


def load_job(path: str) -> Dict[str, Any]:
    """
    Read a job document from a YAML or JSON file, or from stdin when path is ``-``.

    Raises:
        ParameterError: If the file is missing, unreadable or not a mapping
    """
    try:
        if path == '-':
            job = yaml.safe_load(sys.stdin)
        else:
            with open(path, 'r') as f:
                job = yaml.safe_load(f)
    except FileNotFoundError:
        raise ParameterError(f"Job file not found: {path}")
    except yaml.YAMLError as e:
        raise ParameterError(f"Invalid job file {path}: {e}")

    if not isinstance(job, dict):
        raise ParameterError("Job must be a mapping with 'operation' and 'parameters'")
    return job


class JobDriver:
    """
    Runs one job from receipt to its terminal result.

    Any failure that escapes the operation handler ends the job with a single
    ERROR result. The gateway is always disconnected.
    """

    def __init__(self, config: Dict[str, Any], progress: ProgressCallback = no_progress,
                 gateway_factory: Optional[Callable[[Dict[str, Any]], Any]] = None):
        """
        Args:
            config: Loaded application configuration
            progress: Progress callback
            gateway_factory: Builds a gateway from configuration; defaults to the ldap3 gateway
        """
        self.config = config
        self.progress = progress
        self.gateway_factory = gateway_factory or load_gateway
        self.settings = JobSettings.from_config(config)
        self.gateway = None
        self.context: Optional[OperationContext] = None
        self.state = None
        self.state_history: List[JobState] = []

    def run(self, job: Dict[str, Any]) -> JobResult:
        """
        Execute a job.

        Args:
            job: Mapping with ``operation`` and ``parameters``

        Returns:
            The job's terminal result
        """
        self.state_history = []
        self.context = None
        self.state = None
        self._transition(JobState.RECEIVED)
        raw_name = job.get('operation') if isinstance(job, dict) else None
        operation_name = str(raw_name or 'unknown')
        self.progress(0.0, f"Received {operation_name} job")

        try:
            self._transition(JobState.VALIDATING_PREREQS)
            self._open_gateway()

            self._transition(JobState.DISPATCHING)
            if not isinstance(job, dict):
                raise ParameterError("Job must be a mapping with 'operation' and 'parameters'")
            info = get_operation(job.get('operation'))
            operation_name = info.name
            params = info.parse(job.get('parameters'), self.settings)
            handler = HANDLERS[info.name]
            logger.info(f"Dispatching {info.name} (dry run: {getattr(params, 'dry_run', False)})")

            self._transition(JobState.EXECUTING)
            self.context = OperationContext(info, params, self.gateway, self.progress)
            result = handler(self.context)

            self._transition(JobState.REPORTING)
        except ParameterError as e:
            logger.error(f"{operation_name}: {e}")
            result = self._fail(str(e))
        except GatewayUnavailableError as e:
            logger.error(f"Directory gateway unavailable: {e}")
            result = self._fail(str(e))
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            result = self._fail(f"Directory unavailable: {e}")
        except DirectoryError as e:
            logger.error(f"Directory error: {e}")
            result = self._fail(f"Directory error: {e}")
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            result = self._fail(f"Unexpected error: {e}")
        finally:
            self._close_gateway()

        self.progress(1.0, result.description)
        audit_logger.log_job(operation_name, result.severity.name, result.description)
        self._notify(operation_name, result)

        if self.state is not JobState.FAILED:
            self._transition(JobState.DONE)
        return result

    def _transition(self, state: JobState):
        logger.debug(f"Job state: {self.state.value if self.state else '-'} -> {state.value}")
        self.state = state
        self.state_history.append(state)

    def _fail(self, description: str) -> JobResult:
        self._transition(JobState.FAILED)
        return JobResult.error(description)

    def _open_gateway(self):
        self.gateway = self.gateway_factory(self.config)
        self.gateway.connect()

    def _close_gateway(self):
        if self.gateway is not None:
            try:
                self.gateway.disconnect()
            except DirectoryError as e:
                logger.warning(f"Error disconnecting from directory: {e}")
            self.gateway = None

    def _failures(self) -> List[str]:
        if self.context is None:
            return []
        return [
            f"{row.subject_label} ({row.context_label}): {row.detail}" if row.context_label
            else f"{row.subject_label}: {row.detail}"
            for row in self.context.executor.report.rows
            if row.status == OutcomeStatus.FAILED
        ]

    def _notify(self, operation: str, result: JobResult):
        """Send an alert for ERROR and WARNING verdicts; sending problems never change the result."""
        notifications_config = self.config.get('notifications', {})
        dry_run = self.context.dry_run if self.context is not None else None
        try:
            if result.severity is Severity.ERROR:
                send_job_failure_notification(
                    operation, result.description, notifications_config,
                    failures=self._failures(), dry_run=dry_run
                )
            elif result.severity is Severity.WARNING:
                send_job_warning_notification(
                    operation, result.description, self._failures(), notifications_config,
                    dry_run=dry_run
                )
        except Exception as e:
            logger.error(f"Failed to send job notification: {e}")


def health_check(config_path: Optional[str] = None,
                 gateway_factory: Optional[Callable[[Dict[str, Any]], Any]] = None) -> Dict[str, Any]:
    """
    Check configuration, directory connectivity and notification settings.

    Returns:
        Dictionary containing health status and details
    """
    health_status = {
        'status': 'healthy',
        'timestamp': datetime.now().isoformat(),
        'checks': {}
    }

    try:
        config = load_config(config_path)
        health_status['checks']['configuration'] = {
            'status': 'pass',
            'message': 'Configuration loaded successfully'
        }
    except ConfigurationError as e:
        health_status['checks']['configuration'] = {
            'status': 'fail',
            'message': f'Configuration error: {e}'
        }
        health_status['status'] = 'unhealthy'
        return health_status

    gateway = None
    try:
        gateway = (gateway_factory or load_gateway)(config)
        gateway.connect()
        health_status['checks']['ldap'] = {
            'status': 'pass',
            'message': 'LDAP connection successful'
        }
    except DirectoryError as e:
        health_status['checks']['ldap'] = {
            'status': 'fail',
            'message': f'LDAP connection failed: {e}'
        }
        health_status['status'] = 'unhealthy'
    finally:
        if gateway is not None:
            gateway.disconnect()

    notifications_config = config.get('notifications', {})
    if notifications_config.get('enable_email', False):
        health_status['checks']['notifications'] = {
            'status': 'pass',
            'message': 'Email notification configuration valid'
        }
    else:
        health_status['checks']['notifications'] = {
            'status': 'skip',
            'message': 'Email notifications disabled'
        }

    return health_status


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='LDAP Group Ops: batch group management for Active Directory')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--job', '-j', help="Path to a YAML or JSON job file, or '-' for stdin")
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and directory connectivity instead of running a job')

    args = parser.parse_args(argv)

    if args.health_check:
        health_status = health_check(args.config)
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if not args.job:
        parser.error("--job is required unless --health-check is given")

    emitter = JsonLinesEmitter()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        emitter.result(JobResult.error(f"Configuration error: {e}"))
        sys.exit(1)

    setup_logging(config.get('logging', {}))

    try:
        job = load_job(args.job)
    except ParameterError as e:
        logger.error(str(e))
        emitter.result(JobResult.error(str(e)))
        sys.exit(1)

    driver = JobDriver(config, progress=emitter.progress)
    result = driver.run(job)
    emitter.result(result)
    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
