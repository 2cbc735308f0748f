"""
Base local group store interface.

This module defines the abstract base class that every persistence backend must
implement. The reconciliation engine only talks to this contract and never to a
specific storage technology.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterator, List, Optional

from ldap_group_sync.models import Group, GroupMapping, GroupRef

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """
    Raised when the local store fails to read or write a record.

    The reconciliation engine treats this as fatal. Before re-raising it fills
    in ``phase`` ('sync' or 'destructive-delete'), ``identifier`` (the directory
    id being processed) and ``summary`` (counters up to the failure).
    """

    def __init__(self, message: str, phase: Optional[str] = None,
                 identifier: Optional[str] = None):
        super().__init__(message)
        self.phase = phase
        self.identifier = identifier
        self.summary = None

    def __str__(self):
        message = super().__str__()
        context = []
        if self.phase:
            context.append(f"phase={self.phase}")
        if self.identifier:
            context.append(f"directory_id={self.identifier}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class GroupStore(ABC):
    """
    Abstract base class for local group stores.

    Groups and mappings are exchanged as plain dataclasses from
    :mod:`ldap_group_sync.models`. Implementations must raise
    :class:`PersistenceError` for any backend failure.
    """

    @abstractmethod
    def find_group_by_directory_id(self, directory_id: str) -> Optional[Group]:
        """
        Look up a group by its directory identifier.

        Args:
            directory_id: Stable directory identifier (e.g. objectGUID)

        Returns:
            The matching group, or None if not found
        """
        pass

    @abstractmethod
    def get_group(self, local_id: int) -> Optional[Group]:
        """Load a group by its store-assigned id."""
        pass

    def create_group(self) -> Group:
        """
        Create a new, unpersisted group handle.

        Returns:
            Group with no ``local_id``; call :meth:`save_group` to persist it
        """
        return Group()

    @abstractmethod
    def save_group(self, group: Group) -> None:
        """
        Insert or update a group. Assigns ``local_id`` on first save.

        Raises:
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    def list_mappings(self, group: Group) -> List[GroupMapping]:
        """Return all mappings owned by the group."""
        pass

    def create_mapping(self, distinguished_name: str) -> GroupMapping:
        """Create a new, unattached mapping for the given DN."""
        return GroupMapping(distinguished_name=distinguished_name)

    @abstractmethod
    def attach_mapping(self, group: Group, mapping: GroupMapping) -> None:
        """
        Persist the mapping as owned by the group.

        Raises:
            PersistenceError: If the group is not persisted or the write fails
        """
        pass

    @abstractmethod
    def delete_mapping(self, mapping: GroupMapping) -> None:
        """Delete a single mapping."""
        pass

    @abstractmethod
    def delete_group(self, group: Group) -> None:
        """Delete the group and any mappings still attached to it."""
        pass

    @abstractmethod
    def stream_directory_managed_groups(self) -> Iterator[GroupRef]:
        """
        Lazily yield references to every directory-managed group.

        Implementations must keep memory bounded regardless of the number of
        groups and must tolerate groups being deleted while the iterator is
        being consumed.
        """
        pass

    def commit(self) -> None:
        """Make the changes of the current unit of work durable."""
        pass

    def rollback(self) -> None:
        """Discard the changes of the current unit of work."""
        pass

    def close(self) -> None:
        """Release backend resources."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
