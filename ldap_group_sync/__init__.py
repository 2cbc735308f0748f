"""
LDAP Group Sync - Reconcile directory groups with locally persisted Group records.

This package reads group objects from an LDAP/Active Directory tree and keeps a
local set of Group entities (and their distinguished-name mappings) in line
with it, optionally removing groups that disappeared from the directory.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
