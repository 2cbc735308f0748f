"""
LDAP client for connecting to directories and reading group snapshots.

This module provides functionality to connect to LDAP servers and stream the
group objects that the reconciliation engine consumes, fetching only the
attributes it needs.
"""

import logging
import ssl
import uuid
from typing import Dict, Any, Iterator, List, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.core.results import RESULT_SUCCESS

from ldap_group_sync.models import DirectoryGroupRecord
from ldap_group_sync.retry import RetryPolicy, retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

# Record field -> directory attribute (Active Directory defaults)
DEFAULT_ATTRIBUTE_MAP = {
    'directory_id': 'objectGUID',
    'account_name': 'sAMAccountName',
    'display_name': 'name',
    'description': 'description',
    'distinguished_name': 'distinguishedName',
}


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


def format_directory_id(value: Any) -> Optional[str]:
    """
    Render a directory identifier as text.

    Binary objectGUID values (16 bytes, little-endian as stored by Active
    Directory) become canonical lower-case UUID strings. Braced GUID strings
    returned by ldap3's schema-aware formatter are normalized the same way.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        if len(value) == 16:
            return str(uuid.UUID(bytes_le=bytes(value)))
        return bytes(value).hex()
    text = str(value).strip()
    if text.startswith('{') and text.endswith('}'):
        try:
            return str(uuid.UUID(text))
        except ValueError:
            pass
    return text or None


def _first_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _text(value: Any) -> Optional[str]:
    value = _first_value(value)
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode('utf-8', errors='replace')
    value = str(value).strip()
    return value or None


class LDAPClient:
    """
    LDAP client for connecting to directories and reading group objects.

    Group snapshots are read with a paged subtree search and yielded lazily so
    that large directories are never held in memory at once.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.group_base_dn = config.get('group_base_dn', '')
        self.group_filter = config.get('group_filter', '(objectClass=group)')
        self.attribute_map = dict(DEFAULT_ATTRIBUTE_MAP)
        self.attribute_map.update(config.get('attribute_map') or {})

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.retry_policy = RetryPolicy.from_config(config.get('error_handling', {}))

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def attributes(self) -> List[str]:
        """Directory attributes requested by group searches."""
        return list(dict.fromkeys(self.attribute_map.values()))

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[float] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        policy = self.retry_policy.with_overrides(max_attempts=max_retries, delay=retry_wait)

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=policy.max_attempts,
                delay=policy.delay,
                backoff=policy.backoff,
                exceptions=(LDAPException,),
                on_retry=create_retry_callback("LDAP connection")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}"
            )
        except LDAPConnectionError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error during LDAP connection: {e}")
            raise LDAPConnectionError(f"Failed to connect to LDAP: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self) -> None:
        """Single connection attempt; unbinds the half-open connection on failure."""
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not self.connection.open():
                raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except Exception:
            self._drop_connection()
            raise

    def _drop_connection(self) -> None:
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while unbinding failed connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def iter_groups(self) -> Iterator[DirectoryGroupRecord]:
        """
        Stream every group below the group base DN.

        Only the attributes in ``attribute_map`` are requested. Results are
        paged on the server and converted one entry at a time.

        Yields:
            DirectoryGroupRecord for each group entry; records may lack
            mandatory fields, validation is left to the reconciliation engine

        Raises:
            LDAPQueryError: If not connected or the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        search_base = self.group_base_dn or self._get_domain_base()
        logger.info(f"Reading groups with filter {self.group_filter} in base: {search_base}")

        count = 0
        try:
            entries = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=self.group_filter,
                search_scope=SUBTREE,
                attributes=self.attributes,
                paged_size=self.page_size,
                generator=True
            )
            for entry in entries:
                # Referrals and other non-entry responses carry no attributes
                if entry.get('type') != 'searchResEntry':
                    continue
                count += 1
                yield self._to_record(entry)
        except LDAPException as e:
            raise LDAPQueryError(f"Paged group search failed after {count} entries: {e}")

        # Without raise_exceptions ldap3 ends the generator quietly on a failed page
        result = self.connection.result or {}
        if result.get('result', RESULT_SUCCESS) != RESULT_SUCCESS:
            raise LDAPQueryError(
                f"Paged group search failed after {count} entries: "
                f"{result.get('description')} {result.get('message') or ''}".rstrip()
            )

        logger.info(f"Retrieved {count} groups from the directory")

    def _to_record(self, entry: Dict[str, Any]) -> DirectoryGroupRecord:
        """Convert a raw ldap3 response entry into a directory record."""
        attributes = entry.get('attributes') or {}
        raw_attributes = entry.get('raw_attributes') or {}

        def lookup(field: str) -> Any:
            name = self.attribute_map[field]
            if name.lower() in ('dn', 'distinguishedname') and not attributes.get(name):
                return entry.get('dn')
            return attributes.get(name)

        guid_attribute = self.attribute_map['directory_id']
        guid = _first_value(raw_attributes.get(guid_attribute)) or _first_value(lookup('directory_id'))

        return DirectoryGroupRecord(
            directory_id=format_directory_id(guid),
            account_name=_text(lookup('account_name')),
            display_name=_text(lookup('display_name')),
            description=_text(lookup('description')),
            distinguished_name=_text(lookup('distinguished_name')),
        )

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if self.group_base_dn:
            return self.group_base_dn

        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            )
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        return {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'group_base_dn': self.group_base_dn,
            'group_filter': self.group_filter,
            'page_size': self.page_size
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
