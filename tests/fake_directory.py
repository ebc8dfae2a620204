"""
In-memory directory used by the engine tests.

Implements the same methods as DirectoryGateway and records every
state-changing call so tests can assert on what was (or was not) written.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_groupops.errors import DirectoryConnectionError, DirectoryOperationError, DirectoryQueryError
from ldap_groupops.models import (
    DirectoryObject, GroupCategory, GroupScope, ObjectKind, MEMBER_KIND_ORDER,
    encode_group_type, split_dn,
)

DOMAIN = 'DC=example,DC=com'
GROUPS_OU = f'OU=Groups,{DOMAIN}'
USERS_OU = f'OU=Users,{DOMAIN}'
COMPUTERS_OU = f'OU=Computers,{DOMAIN}'

MUTATIONS = (
    'create_object', 'delete_object', 'rename_object', 'move_object',
    'set_attributes', 'clear_attributes', 'add_member', 'remove_member',
)


def _looks_like_dn(identity):
    return '=' in identity.split(',', 1)[0] and ',' in identity


class FakeDirectory:
    """Directory gateway backed by dictionaries."""

    def __init__(self):
        self.objects = {}
        self.members = {}
        self.calls = []
        self.failures = {}
        self.connected = False
        self.connect_error = None
        self.disconnect_count = 0
        for ou in (DOMAIN, GROUPS_OU, USERS_OU, COMPUTERS_OU, f'OU=Archive,{DOMAIN}'):
            self.add_container(ou)

    # -- setup helpers --------------------------------------------------

    def add_container(self, dn):
        rdn = split_dn(dn)[0]
        obj = DirectoryObject(dn=dn, name=rdn.split('=', 1)[1], kind=ObjectKind.CONTAINER)
        self.objects[dn.lower()] = obj
        return obj

    def add_group(self, name, parent=GROUPS_OU, scope=GroupScope.GLOBAL,
                  category=GroupCategory.SECURITY, description=None, sam=None, members=()):
        obj = DirectoryObject(
            dn=f'CN={name},{parent}', name=name, kind=ObjectKind.GROUP,
            sam_account_name=sam or name, group_type=encode_group_type(scope, category),
            description=description,
        )
        self.objects[obj.dn.lower()] = obj
        self.members[obj.dn.lower()] = []
        for member in members:
            self.members[obj.dn.lower()].append(member.dn)
        return obj

    def add_user(self, name, parent=USERS_OU, display_name=None):
        obj = DirectoryObject(dn=f'CN={display_name or name},{parent}', name=display_name or name,
                              kind=ObjectKind.USER, sam_account_name=name)
        self.objects[obj.dn.lower()] = obj
        return obj

    def add_computer(self, name, parent=COMPUTERS_OU):
        obj = DirectoryObject(dn=f'CN={name},{parent}', name=name,
                              kind=ObjectKind.COMPUTER, sam_account_name=f'{name}$')
        self.objects[obj.dn.lower()] = obj
        return obj

    def fail(self, method, message):
        """Make every call to ``method`` raise DirectoryOperationError(message)."""
        self.failures[method] = message

    def get(self, dn):
        return self.objects.get(dn.lower())

    def member_dns(self, group):
        return list(self.members.get(group.dn.lower(), []))

    @property
    def mutation_calls(self):
        return [call for call in self.calls if call[0] in MUTATIONS]

    # -- connection -----------------------------------------------------

    def connect(self):
        if self.connect_error:
            raise DirectoryConnectionError(self.connect_error)
        self.connected = True
        return True

    def disconnect(self):
        self.connected = False
        self.disconnect_count += 1

    # -- lookups --------------------------------------------------------

    def resolve_by_key(self, identity):
        self.calls.append(('resolve_by_key', identity))
        if _looks_like_dn(identity):
            return self.objects.get(identity.lower())
        matches = [obj for obj in self.objects.values()
                   if obj.sam_account_name and obj.sam_account_name.lower() == identity.lower()]
        return matches[0] if len(matches) == 1 else None

    def search_by_name(self, name, object_class=None):
        self.calls.append(('search_by_name', name))
        return [obj for obj in self.objects.values()
                if obj.name.lower() == name.lower()
                and (object_class is None or obj.kind.value == object_class)]

    def find_by_kind(self, identity, kind):
        wanted = identity.lower()
        found = []
        for obj in self.objects.values():
            if obj.kind != kind:
                continue
            sam = (obj.sam_account_name or '').lower()
            if wanted in (sam, obj.dn.lower()) or (kind == ObjectKind.COMPUTER and sam == f'{wanted}$'):
                found.append(obj)
        return found

    def resolve_typed_identity(self, identity, kinds=MEMBER_KIND_ORDER):
        self.calls.append(('resolve_typed_identity', identity))
        for kind in kinds:
            matches = self.find_by_kind(identity, kind)
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise DirectoryQueryError(f"{identity} matches {len(matches)} {kind.value} objects")
        return None

    def is_member(self, group_dn, member_dn):
        self.calls.append(('is_member', group_dn, member_dn))
        return member_dn.lower() in (dn.lower() for dn in self.members.get(group_dn.lower(), []))

    def list_members(self, group_dn, recursive=False):
        self.calls.append(('list_members', group_dn, recursive))
        self._raise_if_failing('list_members')
        result, seen = [], set()
        pending = list(self.members.get(group_dn.lower(), []))
        while pending:
            dn = pending.pop(0)
            if dn.lower() in seen:
                continue
            seen.add(dn.lower())
            obj = self.objects[dn.lower()]
            result.append(obj)
            if recursive and obj.kind == ObjectKind.GROUP:
                pending.extend(self.members.get(dn.lower(), []))
        return result

    # -- mutations ------------------------------------------------------

    def create_object(self, new_object):
        self.calls.append(('create_object', new_object))
        self._raise_if_failing('create_object')
        dn = new_object.get('dn') or f"CN={new_object['name']},{new_object['parent_dn']}"
        if dn.lower() in self.objects:
            raise DirectoryOperationError(f"Create {dn} failed: entryAlreadyExists")
        attributes = new_object.get('attributes', {})
        obj = DirectoryObject(
            dn=dn, name=split_dn(dn)[0].split('=', 1)[1],
            kind=ObjectKind.GROUP if 'group' in new_object['object_class'] else ObjectKind.OTHER,
            sam_account_name=attributes.get('sAMAccountName'),
            group_type=attributes.get('groupType'),
            description=attributes.get('description'),
        )
        self.objects[dn.lower()] = obj
        if obj.kind == ObjectKind.GROUP:
            self.members[dn.lower()] = []
        return obj

    def delete_object(self, key):
        self.calls.append(('delete_object', key))
        self._raise_if_failing('delete_object')
        self.objects.pop(key.lower())
        self.members.pop(key.lower(), None)

    def rename_object(self, key, new_name):
        self.calls.append(('rename_object', key, new_name))
        self._raise_if_failing('rename_object')
        new_dn = f'CN={new_name},{split_dn(key)[1]}'
        self._relocate(key, new_dn, name=new_name)
        return new_dn

    def move_object(self, key, new_path):
        self.calls.append(('move_object', key, new_path))
        self._raise_if_failing('move_object')
        new_dn = f'{split_dn(key)[0]},{new_path}'
        self._relocate(key, new_dn)
        return new_dn

    def set_attributes(self, key, attr_map):
        self.calls.append(('set_attributes', key, dict(attr_map)))
        self._raise_if_failing('set_attributes')
        obj = self.objects[key.lower()]
        if 'sAMAccountName' in attr_map:
            obj.sam_account_name = attr_map['sAMAccountName']
        if 'groupType' in attr_map:
            obj.group_type = attr_map['groupType']
        if 'description' in attr_map:
            obj.description = attr_map['description']

    def clear_attributes(self, key, attr_names):
        self.calls.append(('clear_attributes', key, list(attr_names)))
        self._raise_if_failing('clear_attributes')
        obj = self.objects[key.lower()]
        if 'description' in attr_names:
            obj.description = None

    def add_member(self, group_key, member_key):
        self.calls.append(('add_member', group_key, member_key))
        self._raise_if_failing('add_member')
        self.members.setdefault(group_key.lower(), []).append(member_key)

    def remove_member(self, group_key, member_key):
        self.calls.append(('remove_member', group_key, member_key))
        self._raise_if_failing('remove_member')
        current = self.members.get(group_key.lower(), [])
        self.members[group_key.lower()] = [dn for dn in current if dn.lower() != member_key.lower()]

    def _raise_if_failing(self, method):
        if method in self.failures:
            raise DirectoryOperationError(self.failures[method])

    def _relocate(self, old_dn, new_dn, name=None):
        obj = self.objects.pop(old_dn.lower())
        moved = DirectoryObject(
            dn=new_dn, name=name or obj.name, kind=obj.kind,
            sam_account_name=obj.sam_account_name, group_type=obj.group_type,
            description=obj.description, attributes=obj.attributes,
        )
        self.objects[new_dn.lower()] = moved
        if old_dn.lower() in self.members:
            self.members[new_dn.lower()] = self.members.pop(old_dn.lower())
