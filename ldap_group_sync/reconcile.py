"""
Reconciliation of directory groups into the local group store.

Given a full snapshot of directory group records, the engine creates or updates
one local Group per directory identifier, keeps exactly one mapping per group
pointing at the group's current distinguished name, and, in destructive mode,
removes directory-managed groups that no longer appear in the directory.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Set

from ldap_group_sync.models import DirectoryGroupRecord, Group, RunSummary
from ldap_group_sync.stores.base import GroupStore, PersistenceError

logger = logging.getLogger(__name__)

PHASE_SYNC = 'sync'
PHASE_DESTRUCTIVE = 'destructive-delete'


class SyncError(Exception):
    """Base exception for reconciliation errors."""
    pass


class MalformedRecordError(SyncError):
    """Raised when a directory record lacks a mandatory attribute."""

    def __init__(self, message: str, record: DirectoryGroupRecord):
        super().__init__(message)
        self.record = record


class MappingInvariantViolation(SyncError):
    """Raised when a group does not own exactly one mapping matching its DN."""

    def __init__(self, message: str, phase: str = PHASE_SYNC,
                 identifier: Optional[str] = None):
        super().__init__(message)
        self.phase = phase
        self.identifier = identifier
        self.summary = None


class RunInterrupted(SyncError):
    """Raised when the run deadline passes between two records."""

    def __init__(self, message: str, summary: RunSummary):
        super().__init__(message)
        self.summary = summary


def validate_record(record: DirectoryGroupRecord) -> None:
    """
    Check that a directory record carries every mandatory attribute.

    Raises:
        MalformedRecordError: If directory_id, account_name or
            distinguished_name is missing or blank
    """
    missing = [name for name in ('directory_id', 'account_name', 'distinguished_name')
               if not (getattr(record, name) or '').strip()]
    if missing:
        raise MalformedRecordError(
            f"Directory record is missing {', '.join(missing)}", record
        )


def _event(level: int, event: str, message: str, **fields: Any) -> None:
    logger.log(level, message, extra={'sync_event': event, 'sync_fields': fields})


class ReconciliationEngine:
    """
    Applies a directory snapshot to a :class:`GroupStore`.

    The engine is single-threaded and assumes exclusive access to the store for
    the duration of :meth:`run`. Each record is committed before the next one
    is read.
    """

    def __init__(self, store: GroupStore, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the engine.

        Args:
            store: Local group store to reconcile into
            clock: Returns the timestamp written to ``last_synced_at``
        """
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.summary = RunSummary()

    def run(self, snapshot: Iterable[DirectoryGroupRecord], destructive: bool = False,
            deadline: Optional[float] = None) -> RunSummary:
        """
        Reconcile the store with a full directory snapshot.

        Args:
            snapshot: Directory group records; consumed once, may be lazy
            destructive: Delete directory-managed groups absent from the snapshot
            deadline: ``time.monotonic()`` value after which the run stops
                before the next record

        Returns:
            Run summary with processed/created/updated/deleted counts

        Raises:
            PersistenceError: If the store fails; carries phase, identifier
                and the partial summary
            MappingInvariantViolation: If the store ends up with a wrong mapping set
            RunInterrupted: If the deadline passed; the destructive pass is skipped
        """
        self.summary = RunSummary(destructive=destructive, started_at=self.clock())
        start = time.monotonic()
        seen_ids: Set[str] = set()

        try:
            for record in snapshot:
                if deadline is not None and time.monotonic() >= deadline:
                    self.summary.interrupted = True
                    raise RunInterrupted(
                        f"Run deadline reached after {self.summary.processed_count} records; "
                        f"destructive pass skipped", self.summary
                    )

                if record.directory_id:
                    seen_ids.add(record.directory_id)

                try:
                    validate_record(record)
                except MalformedRecordError as e:
                    self.summary.skipped_count += 1
                    _event(logging.WARNING, 'record.skip',
                           f"Skipping directory record (GUID: {record.directory_id}, "
                           f"sAMAccountName: {record.account_name}, DN: {record.distinguished_name}): {e}",
                           directory_id=record.directory_id, account_name=record.account_name)
                    continue

                self._process_record(record)

            if destructive:
                self._delete_missing_groups(seen_ids)
        finally:
            self.summary.duration_seconds = time.monotonic() - start
            self._log_summary()

        return self.summary

    def _process_record(self, record: DirectoryGroupRecord) -> None:
        try:
            group = self.store.find_group_by_directory_id(record.directory_id)
            created = group is None

            if created:
                group = self.store.create_group()
                group.directory_id = record.directory_id
                _event(logging.INFO, 'group.create',
                       f"Creating new Group (GUID: {record.directory_id}, "
                       f"sAMAccountName: {record.account_name})",
                       directory_id=record.directory_id, account_name=record.account_name)
            else:
                _event(logging.INFO, 'group.update',
                       f"Updating existing Group \"{group.get_title()}\" (ID: {group.local_id}, "
                       f"GUID: {record.directory_id}, sAMAccountName: {record.account_name})",
                       local_id=group.local_id, directory_id=record.directory_id,
                       account_name=record.account_name)

            self.sync_group(group, record)
            self.store.commit()
        except (PersistenceError, MappingInvariantViolation) as e:
            self.store.rollback()
            self._annotate(e, PHASE_SYNC, record.directory_id)
            raise

        self.summary.processed_count += 1
        if created:
            self.summary.created_count += 1
        else:
            self.summary.updated_count += 1

    def sync_group(self, group: Group, record: DirectoryGroupRecord) -> Group:
        """
        Copy directory attributes onto a group and repair its mappings.

        Works identically for new and existing groups. After it returns the
        group is persisted and owns exactly one mapping whose DN equals the
        group's DN.

        Args:
            group: Existing group or a fresh handle from ``store.create_group()``
            record: Directory record to sync from

        Returns:
            The synced group
        """
        group.code = record.account_name
        group.title = record.display_name if record.display_name else record.account_name
        if record.description:
            group.description = record.description
        group.distinguished_name = record.distinguished_name
        group.last_synced_at = self.clock()
        group.is_directory_managed = True
        self.store.save_group(group)

        self._reconcile_mappings(group, record.distinguished_name)
        return group

    def _reconcile_mappings(self, group: Group, distinguished_name: str) -> None:
        has_correct_mapping = False
        for mapping in self.store.list_mappings(group):
            if mapping.distinguished_name == distinguished_name and not has_correct_mapping:
                has_correct_mapping = True
                continue
            _event(logging.INFO, 'mapping.remove',
                   f"Deleting invalid mapping {mapping.distinguished_name} on {group.get_title()}",
                   local_id=group.local_id, directory_id=group.directory_id,
                   mapping_id=mapping.mapping_id, dn=mapping.distinguished_name)
            self.store.delete_mapping(mapping)

        if not has_correct_mapping:
            _event(logging.INFO, 'mapping.add',
                   f"Setting up missing group mapping from {group.get_title()} to {distinguished_name}",
                   local_id=group.local_id, directory_id=group.directory_id,
                   dn=distinguished_name)
            mapping = self.store.create_mapping(distinguished_name)
            self.store.attach_mapping(group, mapping)

        mappings = self.store.list_mappings(group)
        if len(mappings) != 1 or mappings[0].distinguished_name != group.distinguished_name:
            raise MappingInvariantViolation(
                f"Group {group.local_id} owns {len(mappings)} mapping(s) "
                f"{[m.distinguished_name for m in mappings]} after reconciliation, "
                f"expected exactly [{group.distinguished_name!r}]",
                identifier=group.directory_id,
            )

    def _delete_missing_groups(self, seen_ids: Set[str]) -> None:
        """Remove directory-managed groups whose directory id was not seen."""
        directory_id = None
        try:
            for ref in self.store.stream_directory_managed_groups():
                if ref.directory_id in seen_ids:
                    continue
                directory_id = ref.directory_id

                group = self.store.get_group(ref.local_id)
                if group is None or not group.is_directory_managed:
                    continue

                for mapping in self.store.list_mappings(group):
                    self.store.delete_mapping(mapping)
                self.store.delete_group(group)
                self.store.commit()

                self.summary.deleted_count += 1
                _event(logging.INFO, 'group.delete',
                       f"Removing Group \"{group.get_title()}\" (GUID: {group.directory_id}) "
                       f"that no longer exists in LDAP.",
                       local_id=group.local_id, directory_id=group.directory_id)
                directory_id = None
        except PersistenceError as e:
            self.store.rollback()
            self._annotate(e, PHASE_DESTRUCTIVE, directory_id)
            raise

    def _annotate(self, error: Exception, phase: str, identifier: Optional[str]) -> None:
        if getattr(error, 'phase', None) is None:
            error.phase = phase
        if getattr(error, 'identifier', None) is None:
            error.identifier = identifier
        error.summary = self.summary
        logger.error(f"Reconciliation aborted during {phase} "
                     f"(GUID: {identifier}): {error}")

    def _log_summary(self) -> None:
        summary = self.summary
        _event(logging.INFO, 'run.summary',
               f"Done. Processed {summary.processed_count} records. "
               f"Duration: {round(summary.duration_seconds)} seconds",
               processed=summary.processed_count, created=summary.created_count,
               updated=summary.updated_count, deleted=summary.deleted_count,
               skipped=summary.skipped_count, destructive=summary.destructive,
               interrupted=summary.interrupted,
               duration_seconds=round(summary.duration_seconds, 3))
