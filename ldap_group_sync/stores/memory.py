"""
In-memory group store.

Keeps groups and mappings in dictionaries. Used by the test suite and for
trying out a directory configuration without touching a database.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ldap_group_sync.models import Group, GroupMapping, GroupRef
from ldap_group_sync.stores.base import GroupStore, PersistenceError

logger = logging.getLogger(__name__)

_MISSING = object()


class InMemoryGroupStore(GroupStore):
    """
    Dictionary-backed :class:`GroupStore`.

    Writes apply immediately and are journaled until :meth:`commit`;
    :meth:`rollback` replays the journal backwards, so an aborted record leaves
    no trace just like a database transaction. Ids are not reused after a
    rollback.
    """

    def __init__(self, batch_size: int = 500):
        self.batch_size = batch_size
        self.groups: Dict[int, Group] = {}
        self.mappings: Dict[int, GroupMapping] = {}
        self._next_group_id = 1
        self._next_mapping_id = 1
        self._undo: List[Tuple[Dict[int, Any], int, Any]] = []

    def _put(self, table: Dict[int, Any], key: int, value: Any) -> None:
        self._undo.append((table, key, table.get(key, _MISSING)))
        table[key] = value

    def _remove(self, table: Dict[int, Any], key: int) -> None:
        if key in table:
            self._undo.append((table, key, table.pop(key)))

    def find_group_by_directory_id(self, directory_id: str) -> Optional[Group]:
        for group in self.groups.values():
            if group.directory_id == directory_id:
                return replace(group)
        return None

    def get_group(self, local_id: int) -> Optional[Group]:
        group = self.groups.get(local_id)
        return replace(group) if group else None

    def save_group(self, group: Group) -> None:
        if group.local_id is None:
            group.local_id = self._next_group_id
            self._next_group_id += 1
        self._put(self.groups, group.local_id, replace(group))

    def list_mappings(self, group: Group) -> List[GroupMapping]:
        if group.local_id is None:
            return []
        return [replace(mapping) for mapping in self.mappings.values()
                if mapping.group_id == group.local_id]

    def attach_mapping(self, group: Group, mapping: GroupMapping) -> None:
        if group.local_id is None or group.local_id not in self.groups:
            raise PersistenceError(
                f"Cannot attach mapping {mapping.distinguished_name} to unsaved group"
            )
        if mapping.mapping_id is None:
            mapping.mapping_id = self._next_mapping_id
            self._next_mapping_id += 1
        mapping.group_id = group.local_id
        self._put(self.mappings, mapping.mapping_id, replace(mapping))

    def delete_mapping(self, mapping: GroupMapping) -> None:
        self._remove(self.mappings, mapping.mapping_id)

    def delete_group(self, group: Group) -> None:
        for mapping in self.list_mappings(group):
            self.delete_mapping(mapping)
        self._remove(self.groups, group.local_id)

    def stream_directory_managed_groups(self) -> Iterator[GroupRef]:
        # Keyset pagination over ids so deletions during iteration are safe
        last_id = 0
        while True:
            batch = sorted(
                local_id for local_id, group in self.groups.items()
                if local_id > last_id and group.is_directory_managed
            )[:self.batch_size]
            if not batch:
                return
            for local_id in batch:
                group = self.groups.get(local_id)
                if group is not None:
                    yield GroupRef(local_id=local_id, directory_id=group.directory_id)
            last_id = batch[-1]

    def commit(self) -> None:
        self._undo.clear()

    def rollback(self) -> None:
        if self._undo:
            logger.debug(f"Rolling back {len(self._undo)} uncommitted change(s)")
        while self._undo:
            table, key, previous = self._undo.pop()
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous
