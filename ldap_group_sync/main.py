"""
Main orchestrator for LDAP Group Sync application.

This module wires configuration, logging, the LDAP client, the local group
store and the reconciliation engine into a single run, and exposes the
command line entry point.
"""

import os
import sys
import time
import fcntl
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_group_sync.config import load_config, ConfigurationError
from ldap_group_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_group_sync.logging_setup import setup_logging, get_logging_stats
from ldap_group_sync.models import RunSummary
from ldap_group_sync.notifications import (
    format_runtime,
    send_failure_notification,
    send_ldap_connection_failure,
    send_success_summary
)
from ldap_group_sync.reconcile import ReconciliationEngine, MappingInvariantViolation, RunInterrupted
from ldap_group_sync.retry import RetryPolicy, retry_call, create_retry_callback, MaxRetriesExceeded
from ldap_group_sync.stores import create_store, PersistenceError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_STORE_ERROR = 5
EXIT_INTERRUPTED = 6
EXIT_LOCKED = 7


class RunLockError(Exception):
    """Raised when another sync run already holds the lock."""
    pass


class RunLock:
    """
    Single-flight guard so only one run reconciles a store at a time.

    Uses an advisory ``flock`` on the configured lock file; the lock is
    released by the kernel if the process dies.
    """

    def __init__(self, path: str):
        self.path = path
        self._fd = None

    def acquire(self):
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise RunLockError(f"Another group sync run holds {self.path}")
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired run lock {self.path}")

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released run lock {self.path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class SyncOrchestrator:
    """
    Main orchestrator for LDAP to local group reconciliation.

    Owns the resources of one run and maps failures to exit codes.
    """

    def __init__(self, config_path: Optional[str] = None, destructive: Optional[bool] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            destructive: Overrides ``sync.destructive`` from the configuration
        """
        self.config = None
        self.config_path = config_path
        self.destructive_override = destructive
        self.ldap_client = None
        self.store = None
        self.engine = None
        self.last_summary: Optional[RunSummary] = None

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        lock = None
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            lock = RunLock(self.config['sync']['lock_file'])
            lock.acquire()

            logger.info("Starting LDAP Group Sync")
            self._connect_ldap()
            self._open_store()

            summary = self._reconcile()
            self.last_summary = summary
            self._log_sync_summary(summary)
            self._notify_success(summary)
            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except RunLockError as e:
            logger.warning(f"Skipping run: {e}")
            return EXIT_LOCKED
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._notify_ldap_failure(str(e))
            return EXIT_LDAP_ERROR
        except LDAPQueryError as e:
            logger.error(f"LDAP query error: {e}")
            self._notify_failure("LDAP Group Search Failed", str(e), self._partial_summary())
            return EXIT_LDAP_ERROR
        except (PersistenceError, MappingInvariantViolation) as e:
            self.last_summary = e.summary
            logger.error(f"Group store error during {e.phase}: {e}")
            self._notify_failure("Group Store Failure", str(e), e.summary)
            return EXIT_STORE_ERROR
        except RunInterrupted as e:
            self.last_summary = e.summary
            logger.error(f"Sync interrupted: {e}")
            self._notify_failure("Sync Interrupted", str(e), e.summary)
            return EXIT_INTERRUPTED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify_failure("Sync Failed", f"Unexpected error: {e}", self._partial_summary())
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()
            if lock:
                lock.release()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if self.destructive_override is not None:
            self.config['sync']['destructive'] = self.destructive_override

    def _connect_ldap(self):
        """Establish LDAP connection."""
        self.ldap_client = LDAPClient(self.config['ldap'])
        try:
            self.ldap_client.connect()
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _open_store(self):
        """Open the local group store, retrying transient failures."""
        policy = RetryPolicy.from_config(self.config.get('error_handling', {}))
        try:
            self.store = retry_call(
                create_store,
                (self.config['store'],),
                max_attempts=policy.max_attempts,
                delay=policy.delay,
                backoff=policy.backoff,
                exceptions=(PersistenceError,),
                on_retry=create_retry_callback("Opening group store")
            )
        except MaxRetriesExceeded as e:
            error = e.last_exception
            error.phase = 'open'
            error.summary = RunSummary()
            raise error

    def _reconcile(self) -> RunSummary:
        """Stream the directory snapshot through the reconciliation engine."""
        sync_config = self.config['sync']
        destructive = sync_config['destructive']
        max_runtime = sync_config.get('max_runtime_seconds') or 0
        deadline = time.monotonic() + max_runtime if max_runtime else None

        if destructive:
            logger.warning("Destructive mode enabled: groups missing from LDAP will be deleted")

        self.engine = ReconciliationEngine(self.store)
        return self.engine.run(self.ldap_client.iter_groups(), destructive=destructive, deadline=deadline)

    def _partial_summary(self) -> Optional[RunSummary]:
        return self.engine.summary if self.engine else None

    def _log_sync_summary(self, summary: RunSummary):
        """Log final synchronization statistics."""
        logger.info("=== Sync Summary ===")
        logger.info(f"Mode: {'destructive' if summary.destructive else 'non-destructive'}")
        logger.info(f"Total runtime: {format_runtime(summary.duration_seconds)}")
        logger.info(f"Records processed: {summary.processed_count}")
        logger.info(f"Groups created: {summary.created_count}")
        logger.info(f"Groups updated: {summary.updated_count}")
        logger.info(f"Groups deleted: {summary.deleted_count}")
        logger.info(f"Records skipped: {summary.skipped_count}")

    def _notify_failure(self, title: str, error_message: str, summary: Optional[RunSummary] = None):
        try:
            send_failure_notification(title, error_message,
                                      self._notifications_config(), summary=summary)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _notify_ldap_failure(self, error_message: str):
        try:
            retry_count = self.config.get('error_handling', {}).get('max_retries', 3)
            send_ldap_connection_failure(error_message, self._notifications_config(), retry_count)
        except Exception as e:
            logger.error(f"Failed to send LDAP failure notification: {e}")

    def _notify_success(self, summary: RunSummary):
        try:
            send_success_summary(summary, self._notifications_config())
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _notifications_config(self) -> Dict[str, Any]:
        return (self.config or {}).get('notifications', {})

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(name: str, passed: bool, message: str):
            health_status['checks'][name] = {
                'status': 'pass' if passed else 'fail',
                'message': message
            }
            if not passed:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            record('configuration', True, 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        try:
            test_client = LDAPClient(self.config['ldap'])
            test_client.connect(max_retries=1, retry_wait=1)
            try:
                reachable = test_client.test_connection()
            finally:
                test_client.disconnect()
            if reachable:
                record('ldap', True, 'LDAP connection successful')
            else:
                record('ldap', False, 'LDAP root DSE search failed')
        except LDAPConnectionError as e:
            record('ldap', False, f'LDAP connection failed: {e}')

        try:
            with create_store(self.config['store']) as store:
                next(iter(store.stream_directory_managed_groups()), None)
            record('store', True, f"Group store reachable ({self.config['store']['backend']})")
        except (PersistenceError, ValueError) as e:
            record('store', False, f'Group store unavailable: {e}')

        health_status['checks']['logging'] = {
            'status': 'info',
            'message': get_logging_stats()
        }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None
        if self.store:
            self.store.close()
            self.store = None


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Sync directory groups from LDAP into the local group store')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--destructive', dest='destructive', action='store_true', default=None,
                      help='Delete local groups that no longer exist in LDAP')
    mode.add_argument('--no-destructive', dest='destructive', action='store_false',
                      help='Never delete local groups, whatever the configuration says')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, destructive=args.destructive)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2, default=str))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        from ldap_group_sync.notifications import send_test_notification
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)
        if send_test_notification(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
