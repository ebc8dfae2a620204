"""
Identity resolution for job targets and members.

Targets are looked up by unique key first (distinguished name or
sAMAccountName) and fall back to a name search. Members are resolved by kind,
trying users, then computer accounts, then groups.
"""

import logging
from typing import List, Optional, Sequence

from ldap_groupops.errors import DirectoryError
from ldap_groupops.models import ResolvedTarget, ObjectKind, MEMBER_KIND_ORDER
from ldap_groupops.output import ProgressCallback, no_progress, scaled

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Resolves identity strings against the directory gateway.

    Gateway errors are turned into failed ResolvedTarget values; resolve never raises
    for a single bad identity.
    """

    def __init__(self, gateway, expected_kind: Optional[ObjectKind] = ObjectKind.GROUP,
                 member_kinds: Sequence[ObjectKind] = MEMBER_KIND_ORDER):
        """
        Args:
            gateway: Directory gateway
            expected_kind: Kind every target must have; also restricts the name search
            member_kinds: Order in which member kinds are tried
        """
        self.gateway = gateway
        self.expected_kind = expected_kind
        self.member_kinds = tuple(member_kinds)

    def resolve(self, identity: str) -> ResolvedTarget:
        """Resolve one target identity: unique key first, then name search."""
        object_class = self.expected_kind.value if self.expected_kind else None
        try:
            obj = self.gateway.resolve_by_key(identity)
            if obj is not None:
                return self._checked(identity, obj)

            matches = self.gateway.search_by_name(identity, object_class)
        except DirectoryError as e:
            logger.warning(f"Lookup of {identity} failed: {e}")
            return ResolvedTarget.missing(identity, f"Lookup of '{identity}' failed: {e}")

        if len(matches) == 1:
            logger.debug(f"Resolved {identity} by name to {matches[0].dn}")
            return self._checked(identity, matches[0])

        if not matches:
            return ResolvedTarget.missing(identity, f"'{identity}' not found")

        return ResolvedTarget.missing(
            identity,
            f"'{identity}' is ambiguous: {len(matches)} objects match; "
            f"use a unique key (sAMAccountName or distinguished name)"
        )

    def resolve_many(self, identities: Sequence[str], progress: ProgressCallback = no_progress,
                     start: float = 0.0, end: float = 1.0) -> List[ResolvedTarget]:
        """
        Resolve identities in order, reporting progress across [start, end].

        Returns:
            One ResolvedTarget per identity, in input order
        """
        resolved = []
        total = len(identities)
        for i, identity in enumerate(identities, 1):
            target = self.resolve(identity)
            resolved.append(target)
            progress(scaled(start, end, i, total), f"Resolved {i}/{total}: {identity}")
        return resolved

    def resolve_member(self, identity: str) -> ResolvedTarget:
        """Resolve a member identity over the ordered kind set; first match wins."""
        try:
            obj = self.gateway.resolve_typed_identity(identity, self.member_kinds)
        except DirectoryError as e:
            return ResolvedTarget.missing(identity, f"Lookup of member '{identity}' failed: {e}")

        if obj is None:
            kinds = ', '.join(kind.value for kind in self.member_kinds)
            return ResolvedTarget.missing(identity, f"Member '{identity}' not found (tried {kinds})")
        return ResolvedTarget.found(identity, obj)

    def _checked(self, identity: str, obj) -> ResolvedTarget:
        if self.expected_kind is not None and obj.kind != self.expected_kind:
            return ResolvedTarget.missing(
                identity, f"'{identity}' is a {obj.kind.value}, not a {self.expected_kind.value}"
            )
        return ResolvedTarget.found(identity, obj)
