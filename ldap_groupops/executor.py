"""
Batch execution engine.

Applies a mutator to each resolved target (single-axis) or to each
member x group pair (cross-product), recording one OutcomeRow per unit of
work. A failure in one unit is recorded and the batch moves on.
"""

import logging
from typing import Callable, List, Sequence

from ldap_groupops.logging_setup import audit_logger
from ldap_groupops.models import (
    DirectoryObject, ItemResult, OutcomeRow, OutcomeStatus, ResolvedTarget,
)
from ldap_groupops.output import ProgressCallback, no_progress, scaled
from ldap_groupops.params import ParameterError

logger = logging.getLogger(__name__)

SingleMutator = Callable[[DirectoryObject], ItemResult]
PairMutator = Callable[[DirectoryObject, DirectoryObject], ItemResult]


class PreValidationError(ParameterError):
    """Raised when target groups of a membership job do not all resolve."""

    def __init__(self, unresolved: Sequence[ResolvedTarget]):
        self.unresolved = list(unresolved)
        names = ', '.join(target.identity for target in self.unresolved)
        details = '; '.join(target.error or target.identity for target in self.unresolved)
        super().__init__(
            f"{len(self.unresolved)} target group(s) could not be resolved: {names}. "
            f"No changes were made. ({details})"
        )


def require_resolved(targets: Sequence[ResolvedTarget]) -> List[DirectoryObject]:
    """
    Pre-validation gate: every target must resolve before any member work starts.

    Returns:
        The resolved objects, in order

    Raises:
        PreValidationError: Naming every unresolved target
    """
    unresolved = [target for target in targets if not target.success]
    if unresolved:
        raise PreValidationError(unresolved)
    return [target.obj for target in targets]


class BatchReport:
    """Ordered outcome rows with running per-status counters."""

    def __init__(self):
        self.rows: List[OutcomeRow] = []
        self.success_count = 0
        self.skipped_count = 0
        self.fail_count = 0

    def add(self, subject: str, context: str, result: ItemResult) -> OutcomeRow:
        row = OutcomeRow(
            index=len(self.rows) + 1,
            subject_label=subject,
            context_label=context,
            status=result.status,
            detail=result.detail,
            partial=result.partial,
        )
        self.rows.append(row)
        if result.status in (OutcomeStatus.SUCCESS, OutcomeStatus.WOULD_DO):
            self.success_count += 1
        elif result.status == OutcomeStatus.SKIPPED:
            self.skipped_count += 1
        else:
            self.fail_count += 1
        return row

    def __len__(self):
        return len(self.rows)


class BatchExecutor:
    """
    Runs mutators over resolved targets for one operation.

    Loops are strictly sequential; row order equals processing order.
    """

    def __init__(self, operation: str, dry_run: bool, resolver=None,
                 progress: ProgressCallback = no_progress):
        """
        Args:
            operation: Operation name, used for audit records
            dry_run: Whether the job runs in preview mode
            resolver: IdentityResolver, required for cross-product runs
            progress: Progress callback
        """
        self.operation = operation
        self.dry_run = dry_run
        self.resolver = resolver
        self.progress = progress
        self.report = BatchReport()

    def record(self, subject: str, context: str, result: ItemResult) -> OutcomeRow:
        row = self.report.add(subject, context, result)
        audit_logger.log_outcome(self.operation, row, self.dry_run)
        return row

    def run_single(self, targets: Sequence[ResolvedTarget], mutator: SingleMutator,
                   context_label: str = '', start: float = 0.0, end: float = 1.0) -> BatchReport:
        """
        Apply mutator to each resolved target.

        Unresolved targets become FAILED rows carrying the resolution error.
        """
        total = len(targets)
        for i, target in enumerate(targets, 1):
            if not target.success:
                result = ItemResult.failed(target.error or f"'{target.identity}' could not be resolved")
            else:
                result = self._apply(mutator, target.identity, target.obj)
            self.record(target.identity, context_label or self._context_of(target), result)
            self.progress(scaled(start, end, i, total), f"Processed {i}/{total}: {target.identity}")
        return self.report

    def run_cross_product(self, members: Sequence[str], groups: Sequence[DirectoryObject],
                          mutator: PairMutator, start: float = 0.0, end: float = 1.0) -> BatchReport:
        """
        Apply mutator to every (member, group) pair, members outer, groups inner.

        Each cell resolves its member independently; a member that does not resolve
        fails that cell only.
        """
        if self.resolver is None:
            raise ValueError("Cross-product execution needs an identity resolver")

        total = len(members) * len(groups)
        done = 0
        for member_identity in members:
            for group in groups:
                done += 1
                result = self._apply(self._member_cell(mutator, member_identity),
                                     f"{member_identity} -> {group.label}", group)
                self.record(member_identity, group.label, result)
                self.progress(scaled(start, end, done, total),
                              f"Processed {done}/{total}: {member_identity} / {group.label}")
        return self.report

    def run_unit(self, subject: str, context: str, unit: Callable[[], ItemResult]) -> OutcomeRow:
        """Run one unit of work that has no resolved target, e.g. creating a new object."""
        return self.record(subject, context, self._apply(unit, subject))

    def run_fan_out(self, targets: Sequence[ResolvedTarget], expand: Callable[[DirectoryObject], List[tuple]],
                    start: float = 0.0, end: float = 1.0) -> BatchReport:
        """
        Run a unit per target that may yield several rows.

        ``expand`` returns (subject, context, ItemResult) tuples; if it raises, the
        target gets a single FAILED row.
        """
        total = len(targets)
        for i, target in enumerate(targets, 1):
            if not target.success:
                self.record(target.identity, '', ItemResult.failed(target.error))
            else:
                try:
                    produced = expand(target.obj)
                except Exception as e:
                    logger.error(f"{self.operation} failed for {target.identity}: {e}")
                    produced = [(target.identity, '', ItemResult.failed(str(e)))]
                for subject, context, result in produced:
                    self.record(subject, context, result)
            self.progress(scaled(start, end, i, total), f"Processed {i}/{total}: {target.identity}")
        return self.report

    def _member_cell(self, mutator: PairMutator, member_identity: str) -> SingleMutator:
        def cell(group: DirectoryObject) -> ItemResult:
            member = self.resolver.resolve_member(member_identity)
            if not member.success:
                return ItemResult.failed(member.error)
            return mutator(member.obj, group)
        return cell

    def _apply(self, mutator: Callable[..., ItemResult], label: str, *objects) -> ItemResult:
        try:
            result = mutator(*objects)
        except Exception as e:
            logger.error(f"{self.operation} failed for {label}: {e}")
            return ItemResult.failed(str(e))

        if not isinstance(result, ItemResult):
            return ItemResult.failed(f"Internal error: {self.operation} returned {type(result).__name__}")
        if self.dry_run and result.status == OutcomeStatus.SUCCESS:
            # A mutator must never report an executed change during a preview
            return ItemResult.failed(f"Internal error: {self.operation} reported a change during dry run")
        return result

    @staticmethod
    def _context_of(target: ResolvedTarget) -> str:
        return target.obj.parent_dn if target.obj is not None else ''
