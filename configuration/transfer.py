"""Moving configuration trees in and out of workspaces and environments."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from django.db.models import Q
from django.utils import timezone

from configuration.exceptions import ConflictError, NotFoundError, ValidationError
from configuration.models import ConfigurationTemplate, Environment, WorkspaceType
from configuration.services import (
    BulkResult,
    ConfigUpdate,
    bulk_update_config,
    get_active_configs,
    translate_store_errors,
)

logger = logging.getLogger(__name__)


def _flatten(configurations: Dict[str, Any]) -> List[ConfigUpdate]:
    """``{category: {key: value}}`` -> updates; non-object categories are skipped."""
    updates = []
    for category, entries in configurations.items():
        if isinstance(entries, dict):
            updates.extend(ConfigUpdate(category, key, value) for key, value in entries.items())
    return updates


def export_config(workspace_id: str, environment: str = Environment.PRODUCTION, actor: str = "system") -> Dict:
    records = get_active_configs(workspace_id, environment)
    configurations: Dict[str, Dict[str, Any]] = {}
    for record in records:
        configurations.setdefault(record.config_category, {})[record.config_key] = record.value

    return {
        "workspace_id": workspace_id,
        "environment": environment,
        "exported_at": timezone.now().isoformat(),
        "exported_by": actor,
        "configurations": configurations,
        "metadata": {
            "total_configurations": len(records),
            "categories": sorted(configurations),
        },
    }


@translate_store_errors
def import_config(
    workspace_id: str,
    environment: str,
    configurations: Dict[str, Any],
    actor: str = "system",
    overwrite_existing: bool = False,
) -> BulkResult:
    """
    Import a ``{category: {key: value}}`` tree as one bulk update.

    Raises:
        ValidationError: Nothing importable, or any value is invalid
        ConflictError: The environment already has configuration and
            ``overwrite_existing`` is false
    """
    if not isinstance(configurations, dict):
        raise ValidationError(["Invalid configuration data"])
    updates = _flatten(configurations)
    if not updates:
        raise ValidationError(["No valid configuration updates found"])

    if not overwrite_existing and get_active_configs(workspace_id, environment):
        raise ConflictError("Configuration already exists. Set overwrite_existing to overwrite.")

    result = bulk_update_config(workspace_id, environment, updates, actor, reason="Configuration import")
    logger.info(f"Imported {result.updated_count} configurations into {workspace_id}[{environment}]")
    return result


def compare_environments(
    workspace_id: str,
    source_environment: str,
    target_environment: str,
    categories: Optional[Sequence[str]] = None,
) -> Dict:
    """
    Diff the active sets of two environments.

    A diff is ``added`` when only the source has the key, ``deleted`` when
    only the target has it and ``modified`` when the values differ.
    """
    source = {
        (r.config_category, r.config_key): r
        for r in get_active_configs(workspace_id, source_environment)
        if not categories or r.config_category in categories
    }
    target = {
        (r.config_category, r.config_key): r
        for r in get_active_configs(workspace_id, target_environment)
        if not categories or r.config_category in categories
    }

    differences = []
    summary = {"added": 0, "modified": 0, "deleted": 0, "identical": 0}
    for category, key in sorted(set(source) | set(target)):
        src = source.get((category, key))
        dst = target.get((category, key))
        if src is not None and dst is not None and src.value == dst.value:
            summary["identical"] += 1
            continue
        if dst is None:
            change_type = "added"
        elif src is None:
            change_type = "deleted"
        else:
            change_type = "modified"
        summary[change_type] += 1
        differences.append(
            {
                "category": category,
                "key": key,
                "change_type": change_type,
                "old_value": dst.value if dst is not None else None,
                "new_value": src.value if src is not None else None,
                "from_version": dst.version if dst is not None else None,
                "to_version": src.version if src is not None else None,
            }
        )

    return {"differences": differences, "summary": summary}


@translate_store_errors
def sync_environments(
    workspace_id: str,
    source_environment: str,
    target_environment: str,
    categories: Optional[Sequence[str]] = None,
    actor: str = "system",
    reason: Optional[str] = None,
) -> BulkResult:
    """Copy added and modified settings from source onto target. Deletions are not propagated."""
    if source_environment == target_environment:
        raise ValidationError(["Source and target environments must differ"])

    comparison = compare_environments(workspace_id, source_environment, target_environment, categories)
    updates = [
        ConfigUpdate(diff["category"], diff["key"], diff["new_value"])
        for diff in comparison["differences"]
        if diff["change_type"] in ("added", "modified")
    ]
    if not updates:
        return BulkResult(0, [])

    return bulk_update_config(
        workspace_id,
        target_environment,
        updates,
        actor,
        reason=reason or f"Sync from {source_environment}",
    )


def get_templates(workspace_type: str) -> List[ConfigurationTemplate]:
    """Templates for a workspace type plus the common ones, defaults first."""
    if workspace_type not in WorkspaceType.values:
        raise ValidationError([f"Unknown workspace type: {workspace_type}"])
    return list(
        ConfigurationTemplate.objects.filter(
            Q(workspace_type=workspace_type) | Q(workspace_type=WorkspaceType.COMMON)
        ).order_by("-is_default", "name")
    )


@translate_store_errors
def apply_template(
    workspace_id: str,
    environment: str,
    template_id: int,
    actor: str = "system",
) -> BulkResult:
    try:
        template = ConfigurationTemplate.objects.get(pk=template_id)
    except ConfigurationTemplate.DoesNotExist as exc:
        raise NotFoundError(f"Configuration template {template_id} not found") from exc

    updates = _flatten(template.template_config)
    if not updates:
        raise ValidationError([f"Template {template.name} has no configuration"])

    return bulk_update_config(
        workspace_id,
        environment,
        updates,
        actor,
        reason=f"Applied template {template.name}",
    )
