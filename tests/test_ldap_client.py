#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

Covers initialization, TLS configuration, connection retries and conversion
of paged group search results into directory records.
"""

import ssl
import uuid
import unittest
from unittest.mock import Mock, MagicMock, patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import Server, Connection, MOCK_SYNC
from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSocketReceiveError

from ldap_group_sync.ldap_client import (
    LDAPClient,
    LDAPConnectionError,
    LDAPQueryError,
    format_directory_id,
)
from ldap_group_sync.models import DirectoryGroupRecord
from ldap_group_sync.reconcile import ReconciliationEngine
from ldap_group_sync.stores import InMemoryGroupStore


GUID = uuid.UUID('7f3c2a10-5b1e-4d8a-9c6f-0123456789ab')


def group_entry(guid=GUID.bytes_le, name='eng', display='Engineering',
                description='Builds things', dn='CN=Engineering,OU=Groups,DC=example,DC=com'):
    attributes = {
        'objectGUID': '{%s}' % GUID if guid else [],
        'sAMAccountName': name,
        'name': display,
        'description': [description] if description else [],
        'distinguishedName': dn,
    }
    return {
        'type': 'searchResEntry',
        'dn': dn,
        'attributes': attributes,
        'raw_attributes': {'objectGUID': [guid] if guid else []},
    }


class TestLDAPClientInit(unittest.TestCase):

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://dc01.example.com:636',
            'bind_dn': 'CN=svc,OU=Service,DC=example,DC=com',
            'bind_password': 'secret',
        }

    def test_defaults(self):
        client = LDAPClient(self.config)
        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertEqual(client.group_filter, '(objectClass=group)')
        self.assertEqual(client.page_size, 1000)
        self.assertEqual(client.retry_policy.max_attempts, 4)
        self.assertEqual(client.attributes,
                         ['objectGUID', 'sAMAccountName', 'name', 'description', 'distinguishedName'])

    def test_attribute_map_override_for_openldap(self):
        self.config['attribute_map'] = {'directory_id': 'entryUUID', 'account_name': 'cn'}
        self.config['error_handling'] = {'max_retries': 1, 'retry_wait_seconds': 0}
        client = LDAPClient(self.config)

        self.assertIn('entryUUID', client.attributes)
        self.assertIn('cn', client.attributes)
        self.assertNotIn('objectGUID', client.attributes)
        self.assertEqual(client.retry_policy.max_attempts, 2)

    def test_tls_config(self):
        plain = dict(self.config, server_url='ldap://dc01.example.com')
        self.assertIsNone(LDAPClient(plain)._create_tls_config())

        unverified = dict(self.config, verify_ssl=False)
        tls = LDAPClient(unverified)._create_tls_config()
        self.assertEqual(tls.validate, ssl.CERT_NONE)

        tls = LDAPClient(self.config)._create_tls_config()
        self.assertEqual(tls.validate, ssl.CERT_REQUIRED)

    def test_domain_base_from_bind_dn(self):
        client = LDAPClient(self.config)
        self.assertEqual(client._get_domain_base(), 'DC=example,DC=com')

    def test_domain_base_unknown(self):
        client = LDAPClient(dict(self.config, bind_dn='cn=admin'))
        with self.assertRaises(LDAPQueryError):
            client._get_domain_base()


class TestLDAPClientConnect(unittest.TestCase):

    def setUp(self):
        self.config = {
            'server_url': 'ldap://dc01.example.com',
            'bind_dn': 'CN=svc,DC=example,DC=com',
            'bind_password': 'secret',
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0},
        }

    @patch('ldap_group_sync.ldap_client.Connection')
    @patch('ldap_group_sync.ldap_client.Server')
    def test_connect_success(self, mock_server, mock_connection):
        conn = Mock()
        conn.open.return_value = True
        conn.bind.return_value = True
        mock_connection.return_value = conn

        client = LDAPClient(self.config)
        self.assertTrue(client.connect())
        self.assertTrue(client.get_connection_stats()['connected'])

        client.disconnect()
        conn.unbind.assert_called_once_with()
        self.assertFalse(client.get_connection_stats()['connected'])

    @patch('ldap_group_sync.retry.time.sleep')
    @patch('ldap_group_sync.ldap_client.Connection')
    @patch('ldap_group_sync.ldap_client.Server')
    def test_connect_retries_then_succeeds(self, mock_server, mock_connection, mock_sleep):
        failing = Mock()
        failing.open.side_effect = LDAPSocketOpenError('connection refused')
        working = Mock()
        working.open.return_value = True
        working.bind.return_value = True
        mock_connection.side_effect = [failing, working]

        client = LDAPClient(self.config)
        self.assertTrue(client.connect())
        self.assertEqual(mock_connection.call_count, 2)
        failing.unbind.assert_called_once_with()

    @patch('ldap_group_sync.retry.time.sleep')
    @patch('ldap_group_sync.ldap_client.Connection')
    @patch('ldap_group_sync.ldap_client.Server')
    def test_connect_gives_up_after_all_attempts(self, mock_server, mock_connection, mock_sleep):
        conn = Mock()
        conn.open.return_value = True
        conn.bind.return_value = False
        conn.result = {'description': 'invalidCredentials'}
        mock_connection.return_value = conn

        client = LDAPClient(self.config)
        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect()

        self.assertIn('after 3 attempts', str(ctx.exception))
        self.assertEqual(conn.bind.call_count, 3)
        self.assertIsNone(client.connection)

    @patch('ldap_group_sync.ldap_client.Connection')
    @patch('ldap_group_sync.ldap_client.Server')
    def test_start_tls_failure_is_not_retried(self, mock_server, mock_connection):
        conn = Mock()
        conn.open.return_value = True
        conn.start_tls.return_value = False
        mock_connection.return_value = conn

        client = LDAPClient(dict(self.config, start_tls=True))
        with self.assertRaises(LDAPConnectionError):
            client.connect()
        self.assertEqual(mock_connection.call_count, 1)


class TestIterGroups(unittest.TestCase):

    def setUp(self):
        self.client = LDAPClient({
            'server_url': 'ldap://dc01.example.com',
            'bind_dn': 'CN=svc,DC=example,DC=com',
            'bind_password': 'secret',
            'group_base_dn': 'OU=Groups,DC=example,DC=com',
            'page_size': 250,
        })
        self.client.connection = MagicMock()
        self.client.connection.result = {'result': 0, 'description': 'success'}
        self.client._connected = True
        self.paged_search = self.client.connection.extend.standard.paged_search

    def test_requires_connection(self):
        self.client._connected = False
        with self.assertRaises(LDAPQueryError):
            list(self.client.iter_groups())

    def test_search_is_paged_and_projected(self):
        self.paged_search.return_value = iter([])
        list(self.client.iter_groups())

        kwargs = self.paged_search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'OU=Groups,DC=example,DC=com')
        self.assertEqual(kwargs['search_filter'], '(objectClass=group)')
        self.assertEqual(kwargs['paged_size'], 250)
        self.assertTrue(kwargs['generator'])
        self.assertEqual(sorted(kwargs['attributes']),
                         sorted(['objectGUID', 'sAMAccountName', 'name', 'description',
                                 'distinguishedName']))

    def test_entries_become_records(self):
        self.paged_search.return_value = iter([
            group_entry(),
            {'type': 'searchResRef', 'uri': ['ldap://other.example.com/']},
            group_entry(name='ops', display='', description=None,
                        dn='CN=Ops,OU=Groups,DC=example,DC=com'),
        ])

        records = list(self.client.iter_groups())

        self.assertEqual(records[0], DirectoryGroupRecord(
            directory_id=str(GUID),
            account_name='eng',
            display_name='Engineering',
            description='Builds things',
            distinguished_name='CN=Engineering,OU=Groups,DC=example,DC=com',
        ))
        self.assertEqual(len(records), 2)
        self.assertEqual(records[1].account_name, 'ops')
        self.assertIsNone(records[1].display_name)
        self.assertIsNone(records[1].description)

    def test_missing_guid_is_left_for_validation(self):
        self.paged_search.return_value = iter([group_entry(guid=None)])
        records = list(self.client.iter_groups())
        self.assertIsNone(records[0].directory_id)

    def test_dn_falls_back_to_entry_dn(self):
        entry = group_entry()
        del entry['attributes']['distinguishedName']
        self.paged_search.return_value = iter([entry])

        records = list(self.client.iter_groups())
        self.assertEqual(records[0].distinguished_name, 'CN=Engineering,OU=Groups,DC=example,DC=com')

    def test_search_failure_raises_query_error(self):
        def pages():
            yield group_entry()
            raise LDAPSocketReceiveError('connection reset by peer')

        self.paged_search.return_value = pages()

        iterator = self.client.iter_groups()
        self.assertEqual(next(iterator).account_name, 'eng')
        with self.assertRaises(LDAPQueryError) as ctx:
            next(iterator)
        self.assertIn('after 1 entries', str(ctx.exception))

    def test_unsuccessful_result_code_raises_query_error(self):
        self.paged_search.return_value = iter([group_entry()])
        self.client.connection.result = {'result': 4, 'description': 'sizeLimitExceeded',
                                         'message': ''}

        records = []
        with self.assertRaises(LDAPQueryError) as ctx:
            for record in self.client.iter_groups():
                records.append(record)

        self.assertEqual(len(records), 1)
        self.assertIn('sizeLimitExceeded', str(ctx.exception))


class TestIterGroupsMockDirectory(unittest.TestCase):
    """Paged searches against ldap3's in-memory mock directory."""

    def setUp(self):
        self.config = {
            'server_url': 'ldap://dc01.example.com',
            'bind_dn': 'CN=svc,DC=example,DC=com',
            'bind_password': 'secret',
            'group_base_dn': 'OU=Groups,DC=example,DC=com',
            'page_size': 1,
        }
        connection = Connection(Server('dc01.example.com'), user='CN=svc,DC=example,DC=com',
                                password='secret', client_strategy=MOCK_SYNC)
        connection.strategy.add_entry('CN=svc,DC=example,DC=com',
                                      {'objectClass': 'person', 'userPassword': 'secret'})
        connection.strategy.add_entry('OU=Groups,DC=example,DC=com',
                                      {'objectClass': 'organizationalUnit'})
        for name in ('Engineering', 'Operations'):
            dn = f'CN={name},OU=Groups,DC=example,DC=com'
            connection.strategy.add_entry(dn, {
                'objectClass': 'group',
                'objectGUID': f'guid-{name.lower()}',
                'sAMAccountName': name.lower(),
                'name': name,
                'distinguishedName': dn,
            })
        connection.bind()
        self.connection = connection

    def tearDown(self):
        self.connection.unbind()

    def make_client(self, **overrides):
        client = LDAPClient(dict(self.config, **overrides))
        client.connection = self.connection
        client._connected = True
        return client

    def test_groups_are_read_across_pages(self):
        records = list(self.make_client().iter_groups())

        self.assertEqual(sorted(r.account_name for r in records), ['engineering', 'operations'])
        self.assertTrue(all(r.directory_id for r in records))

    def test_missing_search_base_raises_query_error(self):
        client = self.make_client(group_base_dn='OU=Missing,DC=example,DC=com')

        with self.assertRaises(LDAPQueryError) as ctx:
            list(client.iter_groups())
        self.assertIn('noSuchObject', str(ctx.exception))

    def test_failed_search_never_reaches_destructive_pass(self):
        store = InMemoryGroupStore()
        engine = ReconciliationEngine(store)
        engine.run([DirectoryGroupRecord(directory_id='g1', account_name='eng',
                                         distinguished_name='CN=Engineering,OU=Groups')])
        client = self.make_client(group_base_dn='OU=Missing,DC=example,DC=com')

        with self.assertRaises(LDAPQueryError):
            engine.run(client.iter_groups(), destructive=True)

        self.assertIsNotNone(store.find_group_by_directory_id('g1'))
        self.assertEqual(engine.summary.deleted_count, 0)


class TestRootDSECheck(unittest.TestCase):

    def setUp(self):
        self.client = LDAPClient({
            'server_url': 'ldap://dc01.example.com',
            'bind_dn': 'CN=svc,DC=example,DC=com',
            'bind_password': 'secret',
        })
        self.client.connection = MagicMock()
        self.client._connected = True

    def test_successful_root_dse_search(self):
        self.client.connection.search.return_value = True

        self.assertTrue(self.client.test_connection())
        kwargs = self.client.connection.search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], '')
        self.assertEqual(kwargs['attributes'], ['namingContexts'])

    def test_search_error_is_reported_as_false(self):
        self.client.connection.search.side_effect = LDAPSocketReceiveError('connection reset')
        self.assertFalse(self.client.test_connection())


class TestFormatDirectoryId(unittest.TestCase):

    def test_binary_guid(self):
        self.assertEqual(format_directory_id(GUID.bytes_le), str(GUID))

    def test_braced_guid_string(self):
        self.assertEqual(format_directory_id('{%s}' % str(GUID).upper()), str(GUID))

    def test_other_values(self):
        self.assertIsNone(format_directory_id(None))
        self.assertIsNone(format_directory_id('  '))
        self.assertEqual(format_directory_id(b'\x01\x02'), '0102')
        self.assertEqual(format_directory_id('entry-uuid-1'), 'entry-uuid-1')


if __name__ == '__main__':
    unittest.main()
