"""
Operation handlers.

Each handler maps its validated parameters onto resolver and executor calls
and returns the job's terminal result. Destructive handlers check the dry-run
flag before every state-changing gateway call.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ldap_groupops.aggregator import fold, build_caption
from ldap_groupops.executor import BatchExecutor, require_resolved
from ldap_groupops.errors import DirectoryError
from ldap_groupops.models import (
    DirectoryObject, DisplayTable, GroupCategory, GroupScope, ItemResult, JobResult,
    ObjectKind, OutcomeStatus, Severity, encode_group_type, same_dn,
)
from ldap_groupops.output import ProgressCallback, no_progress, scaled
from ldap_groupops.params import OperationInfo, ParameterError
from ldap_groupops.resolver import IdentityResolver

logger = logging.getLogger(__name__)

RESOLVE_RANGE = (0.05, 0.30)
EXECUTE_RANGE = (0.30, 0.95)

COLUMN_TITLES = {
    'createGroup': ('Group', 'Container'),
    'copyGroup': ('Object', 'Target'),
    'listMembers': ('Member', 'Group'),
    'addMembers': ('Member', 'Group'),
    'removeMembers': ('Member', 'Group'),
    'deleteGroup': ('Group', 'Container'),
    'renameGroup': ('Group', 'New name'),
    'moveGroup': ('Group', 'Destination'),
    'setGroupScope': ('Group', 'New scope'),
    'setGroupCategory': ('Group', 'New category'),
}


@dataclass
class OperationContext:
    """Everything a handler needs for one job."""
    info: OperationInfo
    params: Any
    gateway: Any
    progress: ProgressCallback = no_progress

    def __post_init__(self):
        self.resolver = IdentityResolver(self.gateway)
        self.executor = BatchExecutor(
            self.info.name, self.dry_run, resolver=self.resolver, progress=self.progress
        )

    @property
    def dry_run(self) -> bool:
        return bool(getattr(self.params, 'dry_run', False))

    def resolve_targets(self, identities: List[str]):
        start, end = RESOLVE_RANGE
        self.progress(start, f"Resolving {len(identities)} target(s)")
        return self.resolver.resolve_many(identities, self.progress, start, end)

    def require_container(self, path: str) -> DirectoryObject:
        """Precondition check for a destination container."""
        container = self.gateway.resolve_by_key(path)
        if container is None:
            raise ParameterError(f"Container '{path}' does not exist")
        if container.kind != ObjectKind.CONTAINER:
            raise ParameterError(f"'{path}' is not a container")
        return container


def finish(ctx: OperationContext, targets: List[str], extra: Optional[Dict[str, Any]] = None) -> JobResult:
    """Fold the executor's rows into the job's terminal result."""
    info = ctx.info
    rows = ctx.executor.report.rows
    verdict = fold(rows, ctx.dry_run, info.cross_product)
    caption = build_caption(verdict, info.noun, info.verb_done, info.verb_would)

    subject_title, context_title = COLUMN_TITLES.get(info.name, ('Subject', 'Context'))
    table = DisplayTable(
        title=f"{info.name}{' (dry run)' if ctx.dry_run else ''}",
        columns=['#', subject_title, context_title, 'Status', 'Detail'],
        rows=[row.as_list() for row in rows],
        caption=caption,
    )

    result = {
        'operation': info.name,
        'success': verdict.severity is not Severity.ERROR,
        'successCount': verdict.success_count,
        'skippedCount': verdict.skipped_count,
        'failCount': verdict.fail_count,
        'dryRun': ctx.dry_run,
        'targets': targets,
    }
    if extra:
        result.update(extra)

    description = caption
    if verdict.severity is Severity.ERROR:
        failures = [row.detail for row in rows if row.status == OutcomeStatus.FAILED]
        description = f"{caption} First error: {failures[0]}" if failures else caption

    return JobResult(severity=verdict.severity, description=description, result=result, table=table)


def _changed_targets(ctx: OperationContext) -> List[str]:
    return [row.subject_label for row in ctx.executor.report.rows
            if row.status in (OutcomeStatus.SUCCESS, OutcomeStatus.WOULD_DO)]


# ----------------------------------------------------------------------
# Group lifecycle
# ----------------------------------------------------------------------

def create_group(ctx: OperationContext) -> JobResult:
    params = ctx.params
    ctx.require_container(params.path)
    group_type = encode_group_type(params.scope, params.category)
    ctx.progress(RESOLVE_RANGE[1], f"Creating {len(params.group_names)} group(s) in {params.path}")

    def create(name: str) -> Callable[[], ItemResult]:
        def unit() -> ItemResult:
            existing = ctx.gateway.resolve_by_key(name)
            if existing is not None:
                return ItemResult.skipped(f"'{name}' already exists at {existing.dn}")
            if params.dry_run:
                return ItemResult.would_do(
                    f"Would create {params.scope.value} {params.category.value} group CN={name},{params.path}"
                )
            attributes = {'sAMAccountName': name, 'groupType': group_type}
            if params.description:
                attributes['description'] = params.description
            created = ctx.gateway.create_object({
                'name': name,
                'parent_dn': params.path,
                'object_class': ['top', 'group'],
                'attributes': attributes,
            })
            return ItemResult.success(f"Created {created.dn}")
        return unit

    total = len(params.group_names)
    for i, name in enumerate(params.group_names, 1):
        ctx.executor.run_unit(name, params.path, create(name))
        ctx.progress(scaled(EXECUTE_RANGE[0], EXECUTE_RANGE[1], i, total), f"Processed {i}/{total}: {name}")

    return finish(ctx, _changed_targets(ctx), {
        'path': params.path,
        'scope': params.scope.value,
        'category': params.category.value,
    })


def copy_group(ctx: OperationContext) -> JobResult:
    params = ctx.params
    source_target = ctx.resolver.resolve(params.source_group)
    if not source_target.success:
        raise ParameterError(f"Source group {source_target.error}")
    source = source_target.obj
    path = params.path or source.parent_dn
    if params.path:
        ctx.require_container(path)

    ctx.progress(RESOLVE_RANGE[1], f"Copying {source.label} to {params.new_name}")
    state = {'group': ctx.gateway.resolve_by_key(params.new_name), 'created': False}

    def create() -> ItemResult:
        if state['group'] is not None:
            return ItemResult.skipped(f"'{params.new_name}' already exists at {state['group'].dn}")
        if params.dry_run:
            return ItemResult.would_do(f"Would create CN={params.new_name},{path} as a copy of {source.label}")
        attributes = {
            'sAMAccountName': params.new_name,
            'groupType': encode_group_type(source.scope or GroupScope.GLOBAL,
                                           source.category or GroupCategory.SECURITY),
        }
        description = params.description or source.description
        if description:
            attributes['description'] = description
        state['group'] = ctx.gateway.create_object({
            'name': params.new_name,
            'parent_dn': path,
            'object_class': ['top', 'group'],
            'attributes': attributes,
        })
        state['created'] = True
        return ItemResult.success(f"Created {state['group'].dn}")

    create_row = ctx.executor.run_unit(params.new_name, path, create)

    copied = 0
    if params.copy_members and create_row.status != OutcomeStatus.FAILED:
        try:
            members = ctx.gateway.list_members(source.key, recursive=False)
        except DirectoryError as e:
            logger.error(f"Could not read members of {source.dn}: {e}")
            ctx.executor.record(source.label, params.new_name, ItemResult.failed(str(e)))
            members = []
        ctx.progress(0.5, f"Copying {len(members)} member(s)")

        def copy_member(member: DirectoryObject) -> Callable[[], ItemResult]:
            def unit() -> ItemResult:
                group = state['group']
                if group is not None and not state['created'] and ctx.gateway.is_member(group.key, member.key):
                    return ItemResult.skipped(f"{member.label} is already a member of {params.new_name}")
                if params.dry_run:
                    return ItemResult.would_do(f"Would add {member.kind.value} {member.label} to {params.new_name}")
                ctx.gateway.add_member(group.key, member.key)
                return ItemResult.success(f"Added {member.kind.value} {member.label} to {params.new_name}")
            return unit

        for i, member in enumerate(members, 1):
            row = ctx.executor.run_unit(member.label, params.new_name, copy_member(member))
            if row.status in (OutcomeStatus.SUCCESS, OutcomeStatus.WOULD_DO):
                copied += 1
            ctx.progress(scaled(0.5, EXECUTE_RANGE[1], i, len(members)), f"Copied {i}/{len(members)}: {member.label}")

    return finish(ctx, [params.new_name], {
        'sourceGroup': source.dn,
        'newGroup': state['group'].dn if state['group'] is not None else f"CN={params.new_name},{path}",
        'membersCopied': copied,
    })


def delete_group(ctx: OperationContext) -> JobResult:
    params = ctx.params
    targets = ctx.resolve_targets(params.target_groups)

    def delete(group: DirectoryObject) -> ItemResult:
        if params.dry_run:
            return ItemResult.would_do(f"Would delete {group.dn}")
        ctx.gateway.delete_object(group.key)
        return ItemResult.success(f"Deleted {group.dn}")

    ctx.executor.run_single(targets, delete, start=EXECUTE_RANGE[0], end=EXECUTE_RANGE[1])
    return finish(ctx, _changed_targets(ctx))


def rename_group(ctx: OperationContext) -> JobResult:
    params = ctx.params
    targets = ctx.resolve_targets([params.target_group])
    new_name = params.new_name

    def rename(group: DirectoryObject) -> ItemResult:
        if group.name == new_name and group.sam_account_name in (None, new_name):
            return ItemResult.skipped(f"{group.label} is already named {new_name}")
        clash = ctx.gateway.resolve_by_key(new_name)
        if clash is not None and not same_dn(clash.dn, group.dn):
            return ItemResult.failed(f"Cannot rename to {new_name}: {clash.dn} already uses that name")
        if params.dry_run:
            return ItemResult.would_do(f"Would rename {group.label} to {new_name}")
        new_dn = ctx.gateway.rename_object(group.key, new_name)
        try:
            ctx.gateway.set_attributes(new_dn, {'sAMAccountName': new_name})
        except DirectoryError as e:
            logger.warning(f"Renamed {group.dn} to {new_dn} but could not update sAMAccountName: {e}")
            return ItemResult.partly_applied(
                f"Renamed {group.label} to {new_dn} but the sAMAccountName update failed: {e}"
            )
        return ItemResult.success(f"Renamed {group.label} to {new_name} ({new_dn})")

    ctx.executor.run_single(targets, rename, context_label=new_name,
                            start=EXECUTE_RANGE[0], end=EXECUTE_RANGE[1])
    return finish(ctx, _changed_targets(ctx), {'newName': new_name})


def _group_type_problem(group: DirectoryObject) -> Optional[str]:
    if group.group_type is None:
        return f"{group.label} has no groupType attribute"
    return None


def set_group_scope(ctx: OperationContext) -> JobResult:
    params = ctx.params
    targets = ctx.resolve_targets(params.target_groups)
    new_scope = params.new_scope

    def change(group: DirectoryObject) -> ItemResult:
        problem = _group_type_problem(group)
        if problem:
            return ItemResult.failed(problem)
        current = group.scope
        if current == new_scope:
            return ItemResult.skipped(f"Scope is already {new_scope.value}")
        current_label = current.value if current else 'unknown'
        if params.dry_run:
            return ItemResult.would_do(f"Would change scope from {current_label} to {new_scope.value}")
        ctx.gateway.set_attributes(group.key, {
            'groupType': encode_group_type(new_scope, group.category or GroupCategory.SECURITY)
        })
        return ItemResult.success(f"Changed scope from {current_label} to {new_scope.value}")

    ctx.executor.run_single(targets, change, context_label=new_scope.value,
                            start=EXECUTE_RANGE[0], end=EXECUTE_RANGE[1])
    return finish(ctx, _changed_targets(ctx), {'newScope': new_scope.value})


def set_group_category(ctx: OperationContext) -> JobResult:
    params = ctx.params
    targets = ctx.resolve_targets(params.target_groups)
    new_category = params.new_category

    def change(group: DirectoryObject) -> ItemResult:
        problem = _group_type_problem(group)
        if problem:
            return ItemResult.failed(problem)
        current = group.category
        if current == new_category:
            return ItemResult.skipped(f"Category is already {new_category.value}")
        if params.dry_run:
            return ItemResult.would_do(f"Would change category from {current.value} to {new_category.value}")
        ctx.gateway.set_attributes(group.key, {
            'groupType': encode_group_type(group.scope or GroupScope.GLOBAL, new_category)
        })
        return ItemResult.success(f"Changed category from {current.value} to {new_category.value}")

    ctx.executor.run_single(targets, change, context_label=new_category.value,
                            start=EXECUTE_RANGE[0], end=EXECUTE_RANGE[1])
    return finish(ctx, _changed_targets(ctx), {'newCategory': new_category.value})


# ----------------------------------------------------------------------
# Organisation
# ----------------------------------------------------------------------

def move_group(ctx: OperationContext) -> JobResult:
    params = ctx.params
    destination = ctx.require_container(params.target_path)
    targets = ctx.resolve_targets(params.target_groups)

    def move(group: DirectoryObject) -> ItemResult:
        if same_dn(group.parent_dn, destination.dn):
            return ItemResult.skipped(f"{group.label} is already in {destination.dn}")
        if params.dry_run:
            return ItemResult.would_do(f"Would move {group.label} from {group.parent_dn} to {destination.dn}")
        new_dn = ctx.gateway.move_object(group.key, destination.dn)
        return ItemResult.success(f"Moved {group.label} to {new_dn}")

    ctx.executor.run_single(targets, move, context_label=destination.dn,
                            start=EXECUTE_RANGE[0], end=EXECUTE_RANGE[1])
    return finish(ctx, _changed_targets(ctx), {'targetPath': destination.dn})


# ----------------------------------------------------------------------
# Membership
# ----------------------------------------------------------------------

def _gated_groups(ctx: OperationContext) -> List[DirectoryObject]:
    """Resolve all target groups; any failure aborts the job before member work."""
    targets = ctx.resolve_targets(ctx.params.target_groups)
    return require_resolved(targets)


def add_members(ctx: OperationContext) -> JobResult:
    params = ctx.params
    groups = _gated_groups(ctx)

    def add(member: DirectoryObject, group: DirectoryObject) -> ItemResult:
        if same_dn(member.dn, group.dn):
            return ItemResult.failed(f"{group.label} cannot be a member of itself")
        if ctx.gateway.is_member(group.key, member.key):
            return ItemResult.skipped(f"{member.label} is already a member of {group.label}")
        if params.dry_run:
            return ItemResult.would_do(f"Would add {member.kind.value} {member.label} to {group.label}")
        ctx.gateway.add_member(group.key, member.key)
        return ItemResult.success(f"Added {member.kind.value} {member.label} to {group.label}")

    ctx.executor.run_cross_product(params.members, groups, add,
                                   start=EXECUTE_RANGE[0], end=EXECUTE_RANGE[1])
    return finish(ctx, [group.label for group in groups], {'members': list(params.members)})


def remove_members(ctx: OperationContext) -> JobResult:
    params = ctx.params
    groups = _gated_groups(ctx)

    def remove(member: DirectoryObject, group: DirectoryObject) -> ItemResult:
        if not ctx.gateway.is_member(group.key, member.key):
            return ItemResult.skipped(f"{member.label} is not a member of {group.label}")
        if params.dry_run:
            return ItemResult.would_do(f"Would remove {member.kind.value} {member.label} from {group.label}")
        ctx.gateway.remove_member(group.key, member.key)
        return ItemResult.success(f"Removed {member.kind.value} {member.label} from {group.label}")

    ctx.executor.run_cross_product(params.members, groups, remove,
                                   start=EXECUTE_RANGE[0], end=EXECUTE_RANGE[1])
    return finish(ctx, [group.label for group in groups], {'members': list(params.members)})


def list_members(ctx: OperationContext) -> JobResult:
    params = ctx.params
    targets = ctx.resolve_targets(params.target_groups)
    listing: Dict[str, List[Dict[str, str]]] = {}

    def expand(group: DirectoryObject) -> List[tuple]:
        members = ctx.gateway.list_members(group.key, recursive=params.recursive)
        listing[group.label] = [
            {'name': member.label, 'kind': member.kind.value, 'dn': member.dn} for member in members
        ]
        return [
            (member.label, group.label, ItemResult.success(f"{member.kind.value} {member.dn}"))
            for member in members
        ]

    ctx.executor.run_fan_out(targets, expand, start=EXECUTE_RANGE[0], end=EXECUTE_RANGE[1])
    return finish(ctx, [t.obj.label for t in targets if t.success], {
        'recursive': params.recursive,
        'groups': listing,
    })


HANDLERS: Dict[str, Callable[[OperationContext], JobResult]] = {
    'createGroup': create_group,
    'copyGroup': copy_group,
    'listMembers': list_members,
    'addMembers': add_members,
    'removeMembers': remove_members,
    'deleteGroup': delete_group,
    'renameGroup': rename_group,
    'moveGroup': move_group,
    'setGroupScope': set_group_scope,
    'setGroupCategory': set_group_category,
}
