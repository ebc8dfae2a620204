"""
Directory gateway for Active Directory over LDAP.

This module wraps an ldap3 connection and exposes the lookup and mutation
primitives the batch engine needs: identity resolution, create, delete, rename,
move, attribute changes and group membership.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Sequence
from ldap3 import (
    Server, Connection, Tls, ALL, SUBTREE, BASE,
    MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE,
)
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from ldap_groupops.errors import (
    DirectoryError, DirectoryConnectionError, DirectoryQueryError, DirectoryOperationError,
)
from ldap_groupops.models import DirectoryObject, ObjectKind, MEMBER_KIND_ORDER, split_dn
from ldap_groupops.retry import (
    retry_call, is_retryable_error, create_retry_callback, MaxRetriesExceeded, TRANSIENT_RESULT_CODES,
)

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
MATCHING_RULE_IN_CHAIN = '1.2.840.113556.1.4.1941'
RESULT_NO_SUCH_OBJECT = 32

OBJECT_ATTRIBUTES = [
    'objectClass', 'cn', 'name', 'displayName', 'sAMAccountName',
    'groupType', 'description',
]

KIND_FILTERS = {
    ObjectKind.USER: '(&(objectCategory=person)(objectClass=user)'
                     '(|(sAMAccountName={v})(userPrincipalName={v})(distinguishedName={v})))',
    ObjectKind.COMPUTER: '(&(objectClass=computer)'
                         '(|(sAMAccountName={v})(sAMAccountName={v}$)(distinguishedName={v})))',
    ObjectKind.GROUP: '(&(objectClass=group)(|(sAMAccountName={v})(distinguishedName={v})))',
}


class _TransientDirectoryError(DirectoryError):
    """Search failure that is worth another attempt."""
    pass


def looks_like_dn(identity: str) -> bool:
    """Return True if the identity is a distinguished name rather than a plain name."""
    head = identity.split(',', 1)[0]
    return '=' in head and ',' in identity


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _kind_from_classes(object_classes: Sequence[str]) -> ObjectKind:
    classes = {str(c).lower() for c in object_classes or []}
    if 'computer' in classes:
        return ObjectKind.COMPUTER
    if 'group' in classes:
        return ObjectKind.GROUP
    if classes & {'user', 'person', 'inetorgperson'}:
        return ObjectKind.USER
    if classes & {'organizationalunit', 'container', 'domaindns'}:
        return ObjectKind.CONTAINER
    return ObjectKind.OTHER


class DirectoryGateway:
    """
    Active Directory access through ldap3.

    All calls are synchronous. Searches are retried on transient failures;
    mutations are attempted once and raise DirectoryOperationError on rejection.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the gateway with configuration.

        Args:
            config: ``ldap`` configuration section
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn', '')

        # SSL/TLS configuration
        self.use_ssl = bool(config.get('use_ssl')) or self.server_url.lower().startswith('ldaps://')
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 500)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        """
        Open and bind the connection, retrying socket failures.

        Returns:
            True if connection successful

        Raises:
            DirectoryConnectionError: If the directory cannot be reached or bound
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                exceptions=(LDAPSocketOpenError, _TransientDirectoryError),
                on_retry=create_retry_callback(f"LDAP connection to {self.server_url}")
            )
        except MaxRetriesExceeded as e:
            raise DirectoryConnectionError(
                f"Failed to connect to {self.server_url} after {e.attempts} attempts: {e.last_exception}"
            )
        except LDAPBindError as e:
            raise DirectoryConnectionError(f"Bind failed for {self.bind_dn}: {e}")
        except LDAPException as e:
            raise DirectoryConnectionError(f"LDAP connection failed: {e}")

        self._connected = True
        logger.info(f"Connected and bound to {self.server_url}")
        return True

    def _open_and_bind(self):
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not self.connection.open():
                raise _TransientDirectoryError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPBindError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self._describe_result()}")
        except Exception:
            self._drop_connection()
            raise

    def _drop_connection(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while dropping connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """Create TLS configuration when LDAPS or StartTLS is in use."""
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

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close the LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    @property
    def connected(self) -> bool:
        return self._connected

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def resolve_by_key(self, identity: str) -> Optional[DirectoryObject]:
        """
        Look an object up by a unique key: distinguished name or sAMAccountName.

        Returns:
            The matching object, or None if the key does not exist
        """
        if looks_like_dn(identity):
            found = self._search(identity, '(objectClass=*)', scope=BASE)
        else:
            found = self._search(
                self._search_base(),
                f'(sAMAccountName={escape_filter_chars(identity)})'
            )
        if len(found) == 1:
            return found[0]
        if len(found) > 1:
            logger.warning(f"Unique key {identity} matched {len(found)} objects")
        return None

    def search_by_name(self, name: str, object_class: Optional[str] = None) -> List[DirectoryObject]:
        """Search by cn, name or displayName; may return zero, one or many objects."""
        value = escape_filter_chars(name)
        name_filter = f'(|(cn={value})(name={value})(displayName={value}))'
        if object_class:
            name_filter = f'(&(objectClass={escape_filter_chars(object_class)}){name_filter})'
        return self._search(self._search_base(), name_filter)

    def find_by_kind(self, identity: str, kind: ObjectKind) -> List[DirectoryObject]:
        """Find objects of one kind matching an account name, UPN or DN."""
        template = KIND_FILTERS[kind]
        return self._search(self._search_base(), template.format(v=escape_filter_chars(identity)))

    def resolve_typed_identity(self, identity: str,
                               kinds: Sequence[ObjectKind] = MEMBER_KIND_ORDER) -> Optional[DirectoryObject]:
        """
        Resolve a member identity by trying each kind in order.

        Returns:
            The first kind's unique match, or None when no kind matches

        Raises:
            DirectoryQueryError: If a kind matches more than one object
        """
        for kind in kinds:
            matches = self.find_by_kind(identity, kind)
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise DirectoryQueryError(
                    f"{identity} matches {len(matches)} {kind.value} objects"
                )
        return None

    def is_member(self, group_dn: str, member_dn: str) -> bool:
        """Return True if member_dn is a direct member of group_dn."""
        found = self._search(
            group_dn,
            f'(member={escape_filter_chars(member_dn)})',
            scope=BASE,
            attributes=['cn']
        )
        return bool(found)

    def list_members(self, group_dn: str, recursive: bool = False) -> List[DirectoryObject]:
        """
        List members of a group via memberOf reverse lookup.

        Args:
            group_dn: Distinguished name of the group
            recursive: Include nested members (AD in-chain matching rule)
        """
        value = escape_filter_chars(group_dn)
        if recursive:
            member_filter = f'(memberOf:{MATCHING_RULE_IN_CHAIN}:={value})'
        else:
            member_filter = f'(memberOf={value})'
        members = self._search(self._search_base(), member_filter)
        logger.debug(f"Group {group_dn} has {len(members)} members (recursive={recursive})")
        return members

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_object(self, new_object: Dict[str, Any]) -> DirectoryObject:
        """
        Create an object.

        Args:
            new_object: ``object_class``, ``attributes`` and either ``dn`` or
                ``name`` plus ``parent_dn`` of the new entry

        Returns:
            The created object as read back from the directory
        """
        dn = new_object.get('dn') or f"CN={escape_rdn(new_object['name'])},{new_object['parent_dn']}"
        self._require_connected()
        logger.debug(f"Creating {dn}")
        if not self.connection.add(dn, new_object['object_class'], new_object.get('attributes', {})):
            raise DirectoryOperationError(f"Create {dn} failed: {self._describe_result()}")
        created = self.resolve_by_key(dn)
        if created is None:
            raise DirectoryOperationError(f"Created {dn} but could not read it back")
        return created

    def delete_object(self, key: str):
        self._require_connected()
        logger.debug(f"Deleting {key}")
        if not self.connection.delete(key):
            raise DirectoryOperationError(f"Delete {key} failed: {self._describe_result()}")

    def rename_object(self, key: str, new_name: str) -> str:
        """Change the object's RDN; returns the new distinguished name."""
        self._require_connected()
        new_rdn = f'CN={escape_rdn(new_name)}'
        logger.debug(f"Renaming {key} to {new_rdn}")
        if not self.connection.modify_dn(key, new_rdn, delete_old_dn=True):
            raise DirectoryOperationError(f"Rename {key} failed: {self._describe_result()}")
        parent = split_dn(key)[1]
        return f'{new_rdn},{parent}' if parent else new_rdn

    def move_object(self, key: str, new_path: str) -> str:
        """Move the object under new_path; returns the new distinguished name."""
        self._require_connected()
        rdn = split_dn(key)[0]
        logger.debug(f"Moving {key} to {new_path}")
        if not self.connection.modify_dn(key, rdn, delete_old_dn=True, new_superior=new_path):
            raise DirectoryOperationError(f"Move {key} failed: {self._describe_result()}")
        return f'{rdn},{new_path}'

    def set_attributes(self, key: str, attr_map: Dict[str, Any]):
        self._require_connected()
        changes = {}
        for name, value in attr_map.items():
            values = value if isinstance(value, list) else [value]
            changes[name] = [(MODIFY_REPLACE, values)]
        self._modify(key, changes, f"Set {', '.join(attr_map)} on {key}")

    def clear_attributes(self, key: str, attr_names: Sequence[str]):
        self._require_connected()
        changes = {name: [(MODIFY_DELETE, [])] for name in attr_names}
        self._modify(key, changes, f"Clear {', '.join(attr_names)} on {key}")

    def add_member(self, group_key: str, member_key: str):
        self._require_connected()
        self._modify(group_key, {'member': [(MODIFY_ADD, [member_key])]},
                     f"Add {member_key} to {group_key}")

    def remove_member(self, group_key: str, member_key: str):
        self._require_connected()
        self._modify(group_key, {'member': [(MODIFY_DELETE, [member_key])]},
                     f"Remove {member_key} from {group_key}")

    def _modify(self, key: str, changes: Dict[str, Any], action: str):
        logger.debug(action)
        if not self.connection.modify(key, changes):
            raise DirectoryOperationError(f"{action} failed: {self._describe_result()}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_connected(self):
        if not self._connected or self.connection is None:
            raise DirectoryConnectionError("Not connected to LDAP server")

    def _describe_result(self) -> str:
        result = getattr(self.connection, 'result', None) or {}
        description = result.get('description', 'unknown error')
        message = result.get('message')
        return f"{description} ({message})" if message else str(description)

    def _search_base(self) -> str:
        """Work out the search base: configured base_dn, bind DN domain, or server naming context."""
        if self.base_dn:
            return self.base_dn

        dc_parts = [part.strip() for part in self.bind_dn.split(',')
                    if part.strip().upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise DirectoryQueryError("Cannot determine search base DN")

    def _search(self, base: str, search_filter: str, scope=SUBTREE,
                attributes: Optional[List[str]] = None) -> List[DirectoryObject]:
        self._require_connected()
        try:
            return retry_call(
                self._paged_search,
                args=(base, search_filter, scope, attributes or OBJECT_ATTRIBUTES),
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                exceptions=(_TransientDirectoryError,),
                on_retry=create_retry_callback("LDAP search")
            )
        except MaxRetriesExceeded as e:
            raise DirectoryQueryError(f"Search failed after {e.attempts} attempts: {e.last_exception}")

    def _paged_search(self, base: str, search_filter: str, scope, attributes: List[str]) -> List[DirectoryObject]:
        results = []
        cookie = None
        page_count = 0

        while True:
            try:
                success = self.connection.search(
                    search_base=base,
                    search_filter=search_filter,
                    search_scope=scope,
                    attributes=attributes,
                    paged_size=self.page_size if scope == SUBTREE else None,
                    paged_cookie=cookie
                )
            except LDAPException as e:
                if is_retryable_error(e):
                    raise _TransientDirectoryError(str(e))
                raise DirectoryQueryError(f"Search {search_filter} under {base} failed: {e}")

            if not success:
                result_code = self.connection.result.get('result')
                if result_code == RESULT_NO_SUCH_OBJECT:
                    return []
                if result_code in TRANSIENT_RESULT_CODES:
                    raise _TransientDirectoryError(self._describe_result())
                raise DirectoryQueryError(
                    f"Search {search_filter} under {base} failed: {self._describe_result()}"
                )

            page_count += 1
            for item in self.connection.response or []:
                if item.get('type') == 'searchResEntry':
                    results.append(self._to_object(item))

            cookie = self._next_cookie()
            if not cookie:
                break

        logger.debug(f"Search {search_filter} returned {len(results)} entries in {page_count} page(s)")
        return results

    def _next_cookie(self) -> Optional[bytes]:
        controls = self.connection.result.get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID)
        if not paged:
            return None
        return paged.get('value', {}).get('cookie') or None

    @staticmethod
    def _to_object(item: Dict[str, Any]) -> DirectoryObject:
        attrs = item.get('attributes', {}) or {}
        dn = item['dn']
        name = _first(attrs.get('cn')) or _first(attrs.get('name')) or dn.split(',', 1)[0].split('=', 1)[-1]
        group_type = _first(attrs.get('groupType'))
        return DirectoryObject(
            dn=dn,
            name=str(name),
            kind=_kind_from_classes(attrs.get('objectClass', [])),
            sam_account_name=_first(attrs.get('sAMAccountName')) or None,
            group_type=int(group_type) if group_type not in (None, '', []) else None,
            description=_first(attrs.get('description')) or None,
            attributes=dict(attrs),
        )
