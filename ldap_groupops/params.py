"""
Job parameter parsing and validation.

Every operation has a parameter struct that lists the fields it accepts.
All fields are validated before the directory is touched, and every problem
is reported at once. The OPERATIONS table classifies each operation and
holds its default dry-run mode.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Any, Optional, Sequence, Type

from ldap_groupops.models import GroupScope, GroupCategory

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 50
MAX_GROUP_NAME_LENGTH = 64

_LINE_SPLIT_PATTERN = re.compile(r'[;\r\n]+')
_RDN_START = re.compile(r'\s*[A-Za-z][\w-]*\s*=')
_INVALID_NAME_CHARS = set('"/\\[]:;|=,+*?<>@')

_TRUE_STRINGS = {'true', 'yes', 'y', '1', 'on'}
_FALSE_STRINGS = {'false', 'no', 'n', '0', 'off'}


class ParameterError(Exception):
    """Raised when job parameters are missing or invalid."""
    pass


@dataclass
class JobSettings:
    """Job-wide settings taken from configuration."""
    max_items: int = DEFAULT_MAX_ITEMS
    default_group_path: str = ''

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'JobSettings':
        job_config = config.get('job', {}) or {}
        ldap_config = config.get('ldap', {}) or {}
        return cls(
            max_items=int(job_config.get('max_items', DEFAULT_MAX_ITEMS)),
            default_group_path=ldap_config.get('group_base_dn', '') or '',
        )


def _split_identities(text: str) -> List[str]:
    """Split a delimited string, keeping the commas inside distinguished names."""
    entries = []
    for line in _LINE_SPLIT_PATTERN.split(text):
        current = None
        for token in line.split(','):
            # A token continues a DN after an escaped comma, or when it is the
            # next RDN of an entry that already holds one
            if current is not None and (current.endswith('\\') or
                                        ('=' in current and _RDN_START.match(token))):
                current = f"{current},{token}"
                continue
            if current is not None:
                entries.append(current)
            current = token
        if current is not None:
            entries.append(current)
    return entries


def parse_identity_list(value: Any, limit: int = DEFAULT_MAX_ITEMS) -> List[str]:
    """
    Normalise a list of identities.

    Accepts a comma, semicolon or newline delimited string, or a list. Commas
    that separate the components of a distinguished name do not split it, and
    list items are taken as given. Entries are trimmed, empty entries dropped
    and case-insensitive duplicates removed, keeping the first occurrence.

    Args:
        value: Raw parameter value
        limit: Maximum number of identities kept

    Returns:
        Ordered list of identities, at most ``limit`` long
    """
    if value is None:
        return []
    if isinstance(value, str):
        entries = _split_identities(value)
    elif isinstance(value, (list, tuple)):
        entries = [str(item) for item in value if item is not None]
    else:
        entries = [str(value)]

    identities = []
    seen = set()
    for entry in entries:
        entry = entry.strip()
        if not entry or entry.lower() in seen:
            continue
        seen.add(entry.lower())
        identities.append(entry)

    if len(identities) > limit:
        logger.warning(f"{len(identities)} identities supplied; only the first {limit} will be processed")
        identities = identities[:limit]
    return identities


def parse_bool(value: Any) -> bool:
    """Parse a boolean parameter; raises ValueError for anything unrecognised."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f"'{value}' is not a boolean")


def parse_enum(value: Any, enum_cls: Type[Enum]) -> Enum:
    """Match an enum by value, case-insensitively."""
    text = str(value).strip().lower()
    for member in enum_cls:
        if member.value.lower() == text:
            return member
    allowed = ', '.join(member.value for member in enum_cls)
    raise ValueError(f"'{value}' is not one of {allowed}")


class _FieldReader:
    """Reads fields from a raw parameter dict and collects validation errors."""

    def __init__(self, operation: str, raw: Dict[str, Any], settings: JobSettings, known: Sequence[str]):
        self.operation = operation
        self.raw = raw or {}
        self.settings = settings
        self.errors: List[str] = []

        unknown = sorted(set(self.raw) - set(known))
        if unknown:
            logger.warning(f"{operation}: ignoring unrecognised parameters: {', '.join(unknown)}")

    def identities(self, key: str, what: str) -> List[str]:
        values = parse_identity_list(self.raw.get(key), self.settings.max_items)
        if not values:
            self.errors.append(f"{key}: at least one {what} is required")
        return values

    def text(self, key: str, required: bool = True, default: Optional[str] = None) -> Optional[str]:
        value = self.raw.get(key)
        if value is None or str(value).strip() == '':
            if required:
                self.errors.append(f"{key}: a value is required")
            return default
        return str(value).strip()

    def group_name(self, key: str) -> Optional[str]:
        name = self.text(key)
        if name is None:
            return None
        if len(name) > MAX_GROUP_NAME_LENGTH:
            self.errors.append(f"{key}: '{name}' is longer than {MAX_GROUP_NAME_LENGTH} characters")
        bad = sorted(set(name) & _INVALID_NAME_CHARS)
        if bad:
            self.errors.append(f"{key}: '{name}' contains invalid characters: {' '.join(bad)}")
        return name

    def choice(self, key: str, enum_cls: Type[Enum], default: Optional[Enum] = None):
        value = self.raw.get(key)
        if value is None or str(value).strip() == '':
            if default is None:
                self.errors.append(f"{key}: a value is required")
            return default
        try:
            return parse_enum(value, enum_cls)
        except ValueError as e:
            self.errors.append(f"{key}: {e}")
            return default

    def flag(self, key: str, default: bool) -> bool:
        value = self.raw.get(key)
        if value is None or value == '':
            return default
        try:
            return parse_bool(value)
        except ValueError as e:
            self.errors.append(f"{key}: {e}")
            return default

    def check(self):
        if self.errors:
            raise ParameterError(
                f"Invalid parameters for {self.operation}:\n" + "\n".join(f"  - {e}" for e in self.errors)
            )


@dataclass
class CreateGroupParams:
    group_names: List[str]
    path: str
    scope: GroupScope
    category: GroupCategory
    description: Optional[str]
    dry_run: bool

    FIELDS = ('groupNames', 'path', 'scope', 'category', 'description', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'CreateGroupParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        names = reader.identities('groupNames', 'group name')
        for name in names:
            bad = sorted(set(name) & _INVALID_NAME_CHARS)
            if bad or len(name) > MAX_GROUP_NAME_LENGTH:
                reader.errors.append(f"groupNames: '{name}' is not a valid group name")
        path = reader.text('path', required=not settings.default_group_path,
                           default=settings.default_group_path)
        params = cls(
            group_names=names,
            path=path,
            scope=reader.choice('scope', GroupScope, GroupScope.GLOBAL),
            category=reader.choice('category', GroupCategory, GroupCategory.SECURITY),
            description=reader.text('description', required=False),
            dry_run=reader.flag('dryRun', default_dry_run),
        )
        reader.check()
        return params


@dataclass
class CopyGroupParams:
    source_group: str
    new_name: str
    path: Optional[str]
    copy_members: bool
    description: Optional[str]
    dry_run: bool

    FIELDS = ('sourceGroup', 'newName', 'path', 'copyMembers', 'description', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'CopyGroupParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        params = cls(
            source_group=reader.text('sourceGroup'),
            new_name=reader.group_name('newName'),
            path=reader.text('path', required=False),
            copy_members=reader.flag('copyMembers', True),
            description=reader.text('description', required=False),
            dry_run=reader.flag('dryRun', default_dry_run),
        )
        reader.check()
        return params


@dataclass
class TargetGroupsParams:
    target_groups: List[str]
    dry_run: bool

    FIELDS = ('targetGroups', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'TargetGroupsParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        params = cls(
            target_groups=reader.identities('targetGroups', 'target group'),
            dry_run=reader.flag('dryRun', default_dry_run),
        )
        reader.check()
        return params


@dataclass
class RenameGroupParams:
    target_group: str
    new_name: str
    dry_run: bool

    FIELDS = ('targetGroup', 'targetGroups', 'newName', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'RenameGroupParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        key = 'targetGroup' if raw.get('targetGroup') not in (None, '') else 'targetGroups'
        targets = reader.identities(key, 'target group')
        if len(targets) > 1:
            reader.errors.append(f"{key}: renameGroup takes exactly one group, got {len(targets)}")
        params = cls(
            target_group=targets[0] if targets else None,
            new_name=reader.group_name('newName'),
            dry_run=reader.flag('dryRun', default_dry_run),
        )
        reader.check()
        return params


@dataclass
class MoveGroupParams:
    target_groups: List[str]
    target_path: str
    dry_run: bool

    FIELDS = ('targetGroups', 'targetPath', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'MoveGroupParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        params = cls(
            target_groups=reader.identities('targetGroups', 'target group'),
            target_path=reader.text('targetPath'),
            dry_run=reader.flag('dryRun', default_dry_run),
        )
        reader.check()
        return params


@dataclass
class SetScopeParams:
    target_groups: List[str]
    new_scope: GroupScope
    dry_run: bool

    FIELDS = ('targetGroups', 'newScope', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'SetScopeParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        params = cls(
            target_groups=reader.identities('targetGroups', 'target group'),
            new_scope=reader.choice('newScope', GroupScope),
            dry_run=reader.flag('dryRun', default_dry_run),
        )
        reader.check()
        return params


@dataclass
class SetCategoryParams:
    target_groups: List[str]
    new_category: GroupCategory
    dry_run: bool

    FIELDS = ('targetGroups', 'newCategory', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'SetCategoryParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        params = cls(
            target_groups=reader.identities('targetGroups', 'target group'),
            new_category=reader.choice('newCategory', GroupCategory),
            dry_run=reader.flag('dryRun', default_dry_run),
        )
        reader.check()
        return params


@dataclass
class MembershipParams:
    target_groups: List[str]
    members: List[str]
    dry_run: bool

    FIELDS = ('targetGroups', 'members', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'MembershipParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        params = cls(
            target_groups=reader.identities('targetGroups', 'target group'),
            members=reader.identities('members', 'member'),
            dry_run=reader.flag('dryRun', default_dry_run),
        )
        reader.check()
        return params


@dataclass
class ListMembersParams:
    target_groups: List[str]
    recursive: bool
    dry_run: bool = False

    FIELDS = ('targetGroups', 'recursive', 'dryRun')

    @classmethod
    def from_dict(cls, raw, settings: JobSettings, default_dry_run: bool, operation: str) -> 'ListMembersParams':
        reader = _FieldReader(operation, raw, settings, cls.FIELDS)
        params = cls(
            target_groups=reader.identities('targetGroups', 'target group'),
            recursive=reader.flag('recursive', False),
        )
        reader.check()
        return params


@dataclass(frozen=True)
class OperationInfo:
    """Static classification of one operation."""
    name: str
    params_cls: type
    destructive: bool
    default_dry_run: bool
    noun: str
    verb_done: str
    verb_would: str
    cross_product: bool = False

    def parse(self, raw: Dict[str, Any], settings: JobSettings):
        """Validate raw parameters into this operation's parameter struct."""
        if raw is not None and not isinstance(raw, dict):
            raise ParameterError(f"Parameters for {self.name} must be a mapping")
        return self.params_cls.from_dict(raw or {}, settings, self.default_dry_run, self.name)


OPERATIONS: Dict[str, OperationInfo] = {
    info.name: info for info in (
        OperationInfo('createGroup', CreateGroupParams, False, False,
                      'group', 'created', 'would be created'),
        OperationInfo('copyGroup', CopyGroupParams, False, False,
                      'change', 'applied', 'would be applied'),
        OperationInfo('listMembers', ListMembersParams, False, False,
                      'member', 'listed', 'would be listed'),
        OperationInfo('addMembers', MembershipParams, False, False,
                      'membership', 'added', 'would be added', cross_product=True),
        OperationInfo('deleteGroup', TargetGroupsParams, True, True,
                      'group', 'deleted', 'would be deleted'),
        OperationInfo('renameGroup', RenameGroupParams, True, True,
                      'group', 'renamed', 'would be renamed'),
        OperationInfo('moveGroup', MoveGroupParams, True, True,
                      'group', 'moved', 'would be moved'),
        OperationInfo('setGroupScope', SetScopeParams, True, True,
                      'group', 'changed', 'would be changed'),
        OperationInfo('setGroupCategory', SetCategoryParams, True, True,
                      'group', 'changed', 'would be changed'),
        OperationInfo('removeMembers', MembershipParams, True, True,
                      'membership', 'removed', 'would be removed', cross_product=True),
    )
}


def get_operation(name: Any) -> OperationInfo:
    """Look up an operation by name (case-insensitive)."""
    text = str(name or '').strip()
    for op_name, info in OPERATIONS.items():
        if op_name.lower() == text.lower():
            return info
    raise ParameterError(
        f"Unknown operation '{text}'. Supported operations: {', '.join(OPERATIONS)}"
    )
