"""
Data model for LDAP Group Ops.

Directory objects as returned by the gateway, the per-item outcome types produced
by the batch executor, and the job-level verdict and result envelope.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional, Tuple


class ObjectKind(str, Enum):
    """Kind of directory object, derived from its objectClass values."""
    USER = "user"
    COMPUTER = "computer"
    GROUP = "group"
    CONTAINER = "container"
    OTHER = "other"


# Members are resolved by trying each kind in this order; first match wins.
MEMBER_KIND_ORDER = (ObjectKind.USER, ObjectKind.COMPUTER, ObjectKind.GROUP)


class GroupScope(str, Enum):
    GLOBAL = "Global"
    UNIVERSAL = "Universal"
    DOMAIN_LOCAL = "DomainLocal"


class GroupCategory(str, Enum):
    SECURITY = "Security"
    DISTRIBUTION = "Distribution"


# Active Directory groupType bits
GROUP_TYPE_GLOBAL = 0x00000002
GROUP_TYPE_DOMAIN_LOCAL = 0x00000004
GROUP_TYPE_UNIVERSAL = 0x00000008
GROUP_TYPE_SECURITY = 0x80000000

_SCOPE_BITS = {
    GroupScope.GLOBAL: GROUP_TYPE_GLOBAL,
    GroupScope.DOMAIN_LOCAL: GROUP_TYPE_DOMAIN_LOCAL,
    GroupScope.UNIVERSAL: GROUP_TYPE_UNIVERSAL,
}


def encode_group_type(scope: GroupScope, category: GroupCategory) -> int:
    """
    Build the signed 32-bit groupType value AD expects for a scope/category pair.

    Args:
        scope: Group scope
        category: Group category

    Returns:
        groupType as a signed integer (security groups are negative)
    """
    value = _SCOPE_BITS[scope]
    if category == GroupCategory.SECURITY:
        value |= GROUP_TYPE_SECURITY
    if value & 0x80000000:
        value -= 0x100000000
    return value


def decode_group_type(group_type: Optional[int]) -> Tuple[Optional[GroupScope], Optional[GroupCategory]]:
    """Split a groupType value into (scope, category); unknown bits yield None."""
    if group_type is None:
        return None, None

    unsigned = int(group_type) & 0xFFFFFFFF
    scope = None
    for candidate, bit in _SCOPE_BITS.items():
        if unsigned & bit:
            scope = candidate
            break

    category = GroupCategory.SECURITY if unsigned & GROUP_TYPE_SECURITY else GroupCategory.DISTRIBUTION
    return scope, category


def split_dn(dn: str) -> Tuple[str, str]:
    """Split a DN into (rdn, parent), honouring escaped commas in the RDN."""
    i = 0
    while i < len(dn):
        if dn[i] == '\\':
            i += 2
            continue
        if dn[i] == ',':
            return dn[:i].strip(), dn[i + 1:].strip()
        i += 1
    return dn.strip(), ''


def same_dn(first: str, second: str) -> bool:
    """Compare two DNs ignoring case and whitespace around separators."""
    def normalise(dn):
        return re.sub(r'\s*([,=])\s*', r'\1', (dn or '').strip()).lower()
    return normalise(first) == normalise(second)


@dataclass
class DirectoryObject:
    """A directory entry as seen by the engine."""
    dn: str
    name: str
    kind: ObjectKind = ObjectKind.OTHER
    sam_account_name: Optional[str] = None
    group_type: Optional[int] = None
    description: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Globally unique key used for mutations."""
        return self.dn

    @property
    def parent_dn(self) -> str:
        return split_dn(self.dn)[1]

    @property
    def scope(self) -> Optional[GroupScope]:
        return decode_group_type(self.group_type)[0]

    @property
    def category(self) -> Optional[GroupCategory]:
        return decode_group_type(self.group_type)[1]

    @property
    def label(self) -> str:
        return self.sam_account_name or self.name


@dataclass(frozen=True)
class ResolvedTarget:
    """
    Result of resolving one identity string.

    Use the ``found`` and ``missing`` constructors; ``success`` always equals
    ``obj is not None``.
    """
    identity: str
    obj: Optional[DirectoryObject]
    success: bool
    error: Optional[str] = None

    def __post_init__(self):
        if self.success != (self.obj is not None):
            raise ValueError("ResolvedTarget.success must match presence of obj")

    @classmethod
    def found(cls, identity: str, obj: DirectoryObject) -> 'ResolvedTarget':
        return cls(identity=identity, obj=obj, success=True)

    @classmethod
    def missing(cls, identity: str, error: str) -> 'ResolvedTarget':
        return cls(identity=identity, obj=None, success=False, error=error)


class OutcomeStatus(str, Enum):
    SUCCESS = "SUCCESS"
    WOULD_DO = "WOULD_DO"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ItemResult:
    """Tagged outcome of a single unit of work."""
    status: OutcomeStatus
    detail: str = ""
    # Set when a failed unit left some of its changes applied
    partial: bool = False

    @classmethod
    def success(cls, detail: str) -> 'ItemResult':
        return cls(OutcomeStatus.SUCCESS, detail)

    @classmethod
    def would_do(cls, detail: str) -> 'ItemResult':
        return cls(OutcomeStatus.WOULD_DO, detail)

    @classmethod
    def skipped(cls, detail: str) -> 'ItemResult':
        return cls(OutcomeStatus.SKIPPED, detail)

    @classmethod
    def failed(cls, detail: str) -> 'ItemResult':
        return cls(OutcomeStatus.FAILED, detail)

    @classmethod
    def partly_applied(cls, detail: str) -> 'ItemResult':
        return cls(OutcomeStatus.FAILED, detail, partial=True)


@dataclass(frozen=True)
class OutcomeRow:
    """One processed unit of work, in processing order."""
    index: int
    subject_label: str
    context_label: str
    status: OutcomeStatus
    detail: str
    partial: bool = False

    def as_list(self) -> List[Any]:
        return [self.index, self.subject_label, self.context_label, self.status.value, self.detail]


class Severity(Enum):
    """Job-level severity; the value is the numeric result code."""
    SUCCESS = 0
    ERROR = 1
    WARNING = 2

    @property
    def code(self) -> int:
        return self.value

    @property
    def exit_code(self) -> int:
        return 1 if self is Severity.ERROR else 0


@dataclass(frozen=True)
class JobVerdict:
    """Aggregated counters for a finished batch."""
    success_count: int
    fail_count: int
    skipped_count: int
    warning_flag: bool
    dry_run: bool
    cross_product: bool = False
    partial_count: int = 0

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count + self.skipped_count

    @property
    def all_failed(self) -> bool:
        return self.fail_count > 0 and self.success_count + self.skipped_count == 0

    @property
    def severity(self) -> Severity:
        if not self.cross_product and self.all_failed:
            return Severity.ERROR
        if self.warning_flag:
            return Severity.WARNING
        return Severity.SUCCESS


@dataclass
class DisplayTable:
    title: str
    columns: List[str]
    rows: List[List[Any]]
    caption: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'columns': list(self.columns),
            'rows': [list(row) for row in self.rows],
            'caption': self.caption,
        }


@dataclass
class JobResult:
    """Terminal result envelope for one job."""
    severity: Severity
    description: str
    result: Optional[Dict[str, Any]] = None
    table: Optional[DisplayTable] = None

    @property
    def code(self) -> int:
        return self.severity.code

    @property
    def exit_code(self) -> int:
        return self.severity.exit_code

    @classmethod
    def error(cls, description: str) -> 'JobResult':
        return cls(severity=Severity.ERROR, description=description)

    def to_dict(self) -> Dict[str, Any]:
        envelope = {
            'type': 'result',
            'code': self.code,
            'severity': self.severity.name.lower(),
            'description': self.description,
        }
        # Error envelopes carry only the description
        if self.severity is not Severity.ERROR:
            if self.result is not None:
                envelope['result'] = self.result
            if self.table is not None:
                envelope['table'] = self.table.to_dict()
        return envelope
