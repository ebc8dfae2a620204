"""
Outcome aggregation.

Folds a batch's outcome rows into one JobVerdict and phrases the one-line
caption shown to operators.
"""

from typing import Sequence

from ldap_groupops.models import JobVerdict, OutcomeRow, OutcomeStatus, Severity


def fold(rows: Sequence[OutcomeRow], dry_run: bool, cross_product: bool = False) -> JobVerdict:
    """
    Count rows into a verdict.

    WOULD_DO counts as success. For cross-product jobs any failure is a warning,
    since the target groups were already validated. For single-axis jobs a
    failure is a warning only when something else succeeded or was skipped;
    otherwise the verdict's severity is ERROR.

    Args:
        rows: Outcome rows in processing order
        dry_run: Whether the job ran in preview mode
        cross_product: Whether rows came from a member x group run

    Returns:
        The job verdict
    """
    success_count = skipped_count = fail_count = partial_count = 0
    for row in rows:
        if row.partial:
            partial_count += 1
        if row.status in (OutcomeStatus.SUCCESS, OutcomeStatus.WOULD_DO):
            success_count += 1
        elif row.status == OutcomeStatus.SKIPPED:
            skipped_count += 1
        else:
            fail_count += 1

    if cross_product:
        warning_flag = fail_count > 0
    else:
        warning_flag = fail_count > 0 and (success_count + skipped_count) > 0

    return JobVerdict(
        success_count=success_count,
        fail_count=fail_count,
        skipped_count=skipped_count,
        warning_flag=warning_flag,
        dry_run=dry_run,
        cross_product=cross_product,
        partial_count=partial_count,
    )


def build_caption(verdict: JobVerdict, noun: str, verb_done: str, verb_would: str) -> str:
    """
    Build a one-line, dry-run aware summary.

    Args:
        verdict: Folded verdict
        noun: What a unit of work is, e.g. "group" or "membership change"
        verb_done: Past tense for executed changes, e.g. "deleted"
        verb_would: Phrase for previews, e.g. "would be deleted"
    """
    counts = (f"{verdict.success_count} succeeded, {verdict.skipped_count} skipped, "
              f"{verdict.fail_count} failed")

    severity = verdict.severity
    if severity is Severity.ERROR:
        if verdict.partial_count:
            return (f"All {verdict.fail_count} {noun}(s) failed; {verdict.partial_count} of them "
                    f"were partly applied, see the row details.")
        return f"All {verdict.fail_count} {noun}(s) failed; no changes were made."

    if verdict.dry_run:
        caption = (f"Dry run: {verdict.success_count} {noun}(s) {verb_would}, "
                   f"{verdict.skipped_count} already in the requested state. No changes were made.")
        if severity is Severity.WARNING:
            caption = f"Dry run completed with errors ({counts}). No changes were made."
        return caption

    if severity is Severity.WARNING:
        return f"Completed with errors: {counts}."
    return (f"{verdict.success_count} {noun}(s) {verb_done}, "
            f"{verdict.skipped_count} already in the requested state.")
