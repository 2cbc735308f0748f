"""
Local group stores.

``create_store`` builds the backend named by the ``store`` configuration section.
"""

from typing import Any, Dict

from ldap_group_sync.stores.base import GroupStore, PersistenceError
from ldap_group_sync.stores.memory import InMemoryGroupStore

__all__ = ['GroupStore', 'PersistenceError', 'InMemoryGroupStore', 'create_store']


def create_store(config: Dict[str, Any]) -> GroupStore:
    """
    Create a group store from the ``store`` configuration section.

    Args:
        config: Store configuration dictionary

    Returns:
        Ready-to-use store instance

    Raises:
        ValueError: If the backend is unknown
        PersistenceError: If the backend cannot be opened
    """
    backend = config.get('backend', 'sql').lower()
    batch_size = config.get('batch_size', 500)

    if backend == 'memory':
        return InMemoryGroupStore(batch_size=batch_size)
    if backend == 'sql':
        from ldap_group_sync.stores.sql import SQLGroupStore
        return SQLGroupStore(config['url'], batch_size=batch_size,
                             echo=config.get('echo', False))
    raise ValueError(f"Unknown store backend: {backend}")
