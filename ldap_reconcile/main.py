"""
Main orchestrator for LDAP Reconcile application.

This module loads the configuration and the desired-state file, runs the
reconciliation engine, reports the outcome and maps it to an exit code.
"""

import sys
import json
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

import yaml

from ldap_reconcile.config import load_config, ConfigurationError
from ldap_reconcile.dn import container_path_from_value
from ldap_reconcile.engine import ReconciliationEngine
from ldap_reconcile.executor import ErrorPolicy
from ldap_reconcile.ldap_client import ConnectionManager
from ldap_reconcile.logging_setup import setup_logging
from ldap_reconcile.models import DesiredIdentity, ExecutionResult, desired_from_rows
from ldap_reconcile.notifications import (
    send_failure_notification,
    send_directory_unavailable,
    send_run_summary
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_COMPLETED_WITH_ERRORS = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_UNAVAILABLE = 3
EXIT_UNEXPECTED_ERROR = 4


def load_desired_file(path: str, config: Dict[str, Any]) -> List[DesiredIdentity]:
    """
    Load desired identities from a YAML file.

    The file holds either a list of rows or a mapping with an ``identities``
    list. Container values may be DNs or slash-separated paths below the
    default container.

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or []
    except FileNotFoundError:
        raise ConfigurationError(f"Desired state file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in desired state file: {e}")

    rows = data.get('identities', []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise ConfigurationError(f"Desired state file must contain a list of identities: {path}")

    default_container = config.get('reconcile', {}).get('default_container', '')
    prepared = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            raise ConfigurationError(f"Identity {index} in {path} is not a mapping")
        row = dict(row)
        row['container'] = container_path_from_value(row.get('container'), default_container)
        prepared.append(row)

    try:
        return desired_from_rows(prepared, config.get('ldap', {}).get('key_attribute', 'sAMAccountName'))
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Invalid identity in desired state file: {e}")


class ReconcileOrchestrator:
    """
    Runs one reconciliation from configuration and desired-state files.

    Loads configuration, builds the engine, executes, and sends notifications.
    """

    def __init__(self, config_path: Optional[str] = None, desired_path: Optional[str] = None):
        """
        Initialize orchestrator.

        Args:
            config_path: Path to configuration file
            desired_path: Path to desired-state YAML file
        """
        self.config = None
        self.config_path = config_path
        self.desired_path = desired_path
        self.manager = None
        self.engine = None

        self.run_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'identities': 0,
            'planned_actions': 0,
            'plan_summary': {},
        }

    def run(self, plan_only: bool = False, skip_errors: bool = False, output=None) -> int:
        """
        Run the reconciliation.

        Args:
            plan_only: Print the plan as JSON instead of executing it
            skip_errors: Continue after failed actions regardless of configuration
            output: Stream the plan is written to (stdout by default)

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        output = output or sys.stdout
        try:
            self.run_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            logger.info("Starting LDAP Reconcile")

            if not self.desired_path:
                raise ConfigurationError("No desired state file given")
            identities = load_desired_file(self.desired_path, self.config)
            self.run_stats['identities'] = len(identities)
            logger.info(f"Loaded {len(identities)} desired identities from {self.desired_path}")

            self.engine = self._build_engine()

            if plan_only:
                plan = self.engine.analyze(identities)
                self._record_plan(plan)
                json.dump(plan.to_dict(), output, indent=2)
                output.write('\n')
                return EXIT_OK

            policy = ErrorPolicy.SKIP_ERRORS if skip_errors else ErrorPolicy.from_config(self.config)
            result = self.engine.run(identities, policy=policy)
            if self.engine.last_plan is not None:
                self._record_plan(self.engine.last_plan)

            self._finish_stats()
            self._log_run_summary(result)
            return self._report(result)

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Reconciliation Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    def _build_engine(self) -> ReconciliationEngine:
        self.manager = ConnectionManager(self.config['ldap'], self.config.get('connection', {}))
        return ReconciliationEngine.from_config(self.config, manager=self.manager)

    def _record_plan(self, plan):
        self.run_stats['planned_actions'] = len(plan.actions)
        self.run_stats['plan_summary'] = plan.summary()

    def _finish_stats(self):
        self.run_stats['end_time'] = datetime.now()
        self.run_stats['runtime_seconds'] = (
            self.run_stats['end_time'] - self.run_stats['start_time']
        ).total_seconds()

    def _report(self, result: ExecutionResult) -> int:
        """Send notifications for the result and return the exit code."""
        notifications_config = self.config.get('notifications', {})

        if result.fatal_error and result.fatal_error.startswith("Directory unavailable"):
            health = self.manager.health_status().to_dict() if self.manager else None
            self._safe_notify(send_directory_unavailable, result.fatal_error, notifications_config, health)
            return EXIT_DIRECTORY_UNAVAILABLE

        if result.fatal_error:
            self._send_failure_notification("Reconciliation Failed", result.fatal_error)
            return EXIT_UNEXPECTED_ERROR

        self._safe_notify(send_run_summary, result, notifications_config,
                          self.run_stats['plan_summary'], self.run_stats['runtime_seconds'])

        if result.failed or result.aborted or result.cancelled:
            logger.warning(f"Reconciliation finished with {result.failed} failed actions ({result.status.value})")
            return EXIT_COMPLETED_WITH_ERRORS
        logger.info(f"Reconciliation completed ({result.status.value})")
        return EXIT_OK

    def _safe_notify(self, sender, *args):
        try:
            sender(*args)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def _send_failure_notification(self, title: str, error_message: str):
        """Send email notification for failures."""
        if not self.config:
            return
        self._safe_notify(send_failure_notification, title, error_message, self.config.get('notifications', {}))

    def _log_run_summary(self, result: ExecutionResult):
        """Log final run statistics."""
        stats = self.run_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Reconciliation Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Desired identities: {stats['identities']}")
        logger.info(f"Planned actions: {stats['planned_actions']}")
        for kind, count in sorted(stats['plan_summary'].items()):
            logger.info(f"  {kind}: {count}")
        logger.info(f"Succeeded: {result.succeeded}")
        logger.info(f"Failed: {result.failed}")
        logger.info(f"Skipped: {result.skipped}")
        logger.info(f"Warnings: {len(result.warnings)}")

    def health_check(self, connect: bool = True) -> Dict[str, Any]:
        """
        Perform a health check of the reconciliation system.

        Args:
            connect: Attempt a bind; when False only configuration is checked

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
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

        if connect:
            manager = ConnectionManager(self.config['ldap'], self.config.get('connection', {}))
            try:
                connected = manager.ensure_connection()
                directory_health = manager.health_status().to_dict()
            finally:
                manager.close()
            health_status['checks']['directory'] = {
                'status': 'pass' if connected else 'fail',
                'message': 'Directory connection successful' if connected
                else f"Directory connection failed: {directory_health.get('last_error')}",
                'details': directory_health
            }
            if not connected:
                health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
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

    def _cleanup(self):
        """Clean up resources."""
        if self.manager:
            self.manager.close()


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='LDAP Reconcile - converge a directory onto a desired state')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--desired', '-d', help='Path to desired-state YAML file')
    parser.add_argument('--plan-only', action='store_true',
                        help='Print the planned actions as JSON without applying them')
    parser.add_argument('--skip-errors', action='store_true',
                        help='Continue after failed actions')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of reconciling')

    args = parser.parse_args()

    orchestrator = ReconcileOrchestrator(config_path=args.config, desired_path=args.desired)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run(plan_only=args.plan_only, skip_errors=args.skip_errors))


if __name__ == "__main__":
    main()
