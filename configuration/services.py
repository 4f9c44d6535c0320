import functools
import logging
from typing import Any, Callable, Iterable, List, NamedTuple, Optional, Sequence, TypeVar

from django.conf import settings
from django.core.cache import cache
from django.db import IntegrityError, OperationalError, transaction
from django.db.models import Max
from django.utils import timezone

from configuration import validators
from configuration.exceptions import (
    NotFoundError,
    TransientStoreError,
    ValidationError,
    VersionConflictError,
    VersionNotFoundError,
)
from configuration.models import (
    ChangeType,
    ConfigurationHistory,
    ConfigurationRecord,
    Environment,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Cache settings
CACHE_TIMEOUT = 300  # 5 minutes
CACHE_KEY_PREFIX = "config:active:"

# Resource limits for predictable behavior
WRITE_RETRY_ATTEMPTS = 3
MAX_BULK_ITEMS = 1000
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500

DEFAULT_REASONS = {
    "create": "Configuration update",
    "update": "Configuration update",
    "delete": "Configuration delete",
    "rollback": "Configuration rollback",
    "deploy": "Configuration deployment",
}


class Scope(NamedTuple):
    """One independently versioned setting."""

    workspace_id: str
    category: str
    key: str
    environment: str = Environment.PRODUCTION

    def filter_kwargs(self) -> dict:
        return {
            "workspace_id": self.workspace_id,
            "config_category": self.category,
            "config_key": self.key,
            "environment": self.environment,
        }

    def __str__(self) -> str:
        return f"{self.workspace_id}/{self.category}.{self.key}[{self.environment}]"


class ConfigUpdate(NamedTuple):
    category: str
    key: str
    value: Any


class BulkResult(NamedTuple):
    updated_count: int
    records: List[ConfigurationRecord]


class HistoryPage(NamedTuple):
    entries: List[ConfigurationHistory]
    total: int


def _setting(name: str, default):
    return getattr(settings, name, default)


def translate_store_errors(func: Callable[..., T]) -> Callable[..., T]:
    """Surface database outages as TransientStoreError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OperationalError as exc:
            logger.error(f"Configuration store unavailable in {func.__name__}: {exc}")
            raise TransientStoreError(str(exc)) from exc

    return wrapper


def _active_cache_key(workspace_id: str, environment: str, category: Optional[str] = None) -> str:
    """Generate cache key for an active-set lookup."""
    return f"{CACHE_KEY_PREFIX}{workspace_id}:{environment}:{category or '*'}"


def invalidate_active_cache(workspace_id: str, environment: str, categories: Iterable[str]) -> None:
    """
    Drop cached active-set reads for a workspace environment.

    Keys are deleted now and again once the outermost transaction commits,
    so a read cached while a caller's transaction is still open cannot
    outlive the commit.
    """
    keys = [_active_cache_key(workspace_id, environment)]
    keys.extend(_active_cache_key(workspace_id, environment, category) for category in set(categories))
    cache.delete_many(keys)
    transaction.on_commit(lambda: cache.delete_many(keys))


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@translate_store_errors
def get_active_configs(
    workspace_id: str,
    environment: str = Environment.PRODUCTION,
    category: Optional[str] = None,
    use_cache: bool = True,
) -> List[ConfigurationRecord]:
    """
    Return the active record of every scope in a workspace/environment,
    ordered by (category, key).

    Served from the cache when possible; writes invalidate the entries.
    """
    cache_key = _active_cache_key(workspace_id, environment, category)
    if use_cache:
        cached = cache.get(cache_key)
        if cached is not None:
            return list(cached)

    queryset = ConfigurationRecord.objects.filter(
        workspace_id=workspace_id,
        environment=environment,
        is_active=True,
    )
    if category:
        queryset = queryset.filter(config_category=category)
    records = list(queryset.order_by("config_category", "config_key"))

    if use_cache:
        cache.set(cache_key, records, _setting("CONFIG_CACHE_TIMEOUT", CACHE_TIMEOUT))
    return records


@translate_store_errors
def get_config_version(scope: Scope, version: int) -> ConfigurationRecord:
    try:
        return ConfigurationRecord.objects.get(version=version, **scope.filter_kwargs())
    except ConfigurationRecord.DoesNotExist as exc:
        raise VersionNotFoundError(version) from exc


@translate_store_errors
def list_config_versions(scope: Scope) -> List[ConfigurationRecord]:
    return list(ConfigurationRecord.objects.filter(**scope.filter_kwargs()).order_by("-version"))


@translate_store_errors
def get_config_history(
    workspace_id: str,
    category: Optional[str] = None,
    key: Optional[str] = None,
    environment: Optional[str] = None,
    change_type: Optional[str] = None,
    changed_by: Optional[str] = None,
    changed_since=None,
    changed_until=None,
    limit: int = DEFAULT_HISTORY_LIMIT,
    offset: int = 0,
) -> HistoryPage:
    """
    Page through the audit history of a workspace, newest first.

    Args:
        workspace_id: Workspace whose history to read
        category, key, environment, change_type, changed_by: Optional exact-match filters
        changed_since: Only entries changed at or after this datetime
        changed_until: Only entries changed at or before this datetime
        limit: Page size, capped at CONFIG_HISTORY_MAX_LIMIT
        offset: Number of entries to skip

    Returns:
        HistoryPage of entries plus the total matching count
    """
    queryset = ConfigurationHistory.objects.filter(workspace_id=workspace_id)
    if category:
        queryset = queryset.filter(config_category=category)
    if key:
        queryset = queryset.filter(config_key=key)
    if environment:
        queryset = queryset.filter(environment=environment)
    if change_type:
        queryset = queryset.filter(change_type=change_type)
    if changed_by:
        queryset = queryset.filter(changed_by=changed_by)
    if changed_since:
        queryset = queryset.filter(changed_at__gte=changed_since)
    if changed_until:
        queryset = queryset.filter(changed_at__lte=changed_until)

    limit = max(1, min(limit, _setting("CONFIG_HISTORY_MAX_LIMIT", MAX_HISTORY_LIMIT)))
    offset = max(0, offset)

    total = queryset.count()
    entries = list(queryset.order_by("-changed_at", "-id")[offset : offset + limit])
    return HistoryPage(entries, total)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _next_version(scope: Scope) -> int:
    """Next version for a scope, counting inactive rows so numbers are never reused."""
    current = ConfigurationRecord.objects.filter(**scope.filter_kwargs()).aggregate(
        max_version=Max("version")
    )["max_version"]
    return (current or 0) + 1


def _lock_active(scope: Scope) -> Optional[ConfigurationRecord]:
    return (
        ConfigurationRecord.objects.select_for_update()
        .filter(is_active=True, **scope.filter_kwargs())
        .first()
    )


def record_history(
    record: ConfigurationRecord,
    change_type: str,
    actor: str,
    old_value: Any = None,
    new_value: Any = None,
    reason: Optional[str] = None,
    description: Optional[str] = None,
    applied_at=None,
) -> ConfigurationHistory:
    """Append a history entry. Must run in the transaction that made the change."""
    return ConfigurationHistory.objects.create(
        workspace_id=record.workspace_id,
        configuration=record,
        change_type=change_type,
        config_category=record.config_category,
        config_key=record.config_key,
        environment=record.environment,
        old_value=old_value,
        new_value=new_value,
        change_reason=reason or DEFAULT_REASONS[str(change_type)],
        change_description=description or "",
        changed_by=actor,
        applied_at=applied_at,
    )


def _write_version(
    scope: Scope,
    value: Any,
    actor: str,
    change_type: Optional[str] = None,
    reason: Optional[str] = None,
    description: Optional[str] = None,
    validation: Optional[validators.ValidationResult] = None,
    require_active: bool = False,
) -> ConfigurationRecord:
    """
    Supersede the active record of ``scope`` with a new version.

    Must run inside ``transaction.atomic()``. A concurrent writer claiming
    the same version makes the insert raise IntegrityError.
    """
    current = _lock_active(scope)
    if current is None and require_active:
        raise NotFoundError(f"No active configuration for {scope}")

    version = _next_version(scope)
    if current is not None:
        ConfigurationRecord.objects.filter(pk=current.pk).update(is_active=False, updated_at=timezone.now())

    if validation is None:
        validation = validators.validate(scope.category, scope.key, value)

    record = ConfigurationRecord.objects.create(
        version=version,
        value=value,
        is_active=True,
        is_validated=validation.is_valid,
        validation_errors=validation.errors,
        created_by=actor,
        **scope.filter_kwargs(),
    )

    if change_type is None:
        change_type = ChangeType.UPDATE if current is not None else ChangeType.CREATE
    record_history(
        record,
        change_type,
        actor,
        old_value=current.value if current is not None else None,
        new_value=value,
        reason=reason,
        description=description,
    )
    return record


def _run_atomic_with_retry(operation: str, func: Callable[[], T]) -> T:
    """
    Run ``func`` in its own transaction, retrying the whole transaction
    when a unique constraint reports a lost version race.
    """
    attempts = _setting("CONFIG_WRITE_RETRY_ATTEMPTS", WRITE_RETRY_ATTEMPTS)
    for attempt in range(attempts):
        try:
            with transaction.atomic():
                return func()
        except IntegrityError as exc:
            logger.warning(f"Version conflict during {operation} on attempt {attempt + 1}: {exc}")

    logger.error(f"Giving up on {operation} after {attempts} conflicting attempts")
    raise VersionConflictError(f"Concurrent update conflict during {operation}; retry the request")


@translate_store_errors
def write_config(
    scope: Scope,
    value: Any,
    actor: str = "system",
    reason: Optional[str] = None,
    description: Optional[str] = None,
    schema: Optional[dict] = None,
) -> ConfigurationRecord:
    """
    Create or update a configuration setting as a new active version.

    Raises:
        ValidationError: The value failed validation; nothing was written
        VersionConflictError: Concurrent writers kept winning the version race
    """
    result = validators.validate(scope.category, scope.key, value, schema)
    if not result.is_valid:
        raise ValidationError(
            result.errors,
            result.warnings,
            [(scope.category, scope.key, error) for error in result.errors],
        )

    record = _run_atomic_with_retry(
        f"update of {scope}",
        lambda: _write_version(
            scope, value, actor, reason=reason, description=description, validation=result
        ),
    )
    invalidate_active_cache(scope.workspace_id, scope.environment, [scope.category])

    logger.info(f"Configuration {scope} updated to v{record.version} by {actor}")
    return record


@translate_store_errors
def rollback_config(
    scope: Scope,
    target_version: int,
    actor: str = "system",
    reason: Optional[str] = None,
) -> ConfigurationRecord:
    """
    Restore the value of ``target_version`` as a brand new version.

    Raises:
        VersionNotFoundError: ``target_version`` does not exist for the scope
        NotFoundError: The scope has no active record
    """

    def _rollback() -> ConfigurationRecord:
        target = ConfigurationRecord.objects.filter(version=target_version, **scope.filter_kwargs()).first()
        if target is None:
            raise VersionNotFoundError(target_version)
        return _write_version(
            scope,
            target.value,
            actor,
            change_type=ChangeType.ROLLBACK,
            reason=reason,
            description=f"Rolled back to version {target_version}",
            require_active=True,
        )

    record = _run_atomic_with_retry(f"rollback of {scope}", _rollback)
    invalidate_active_cache(scope.workspace_id, scope.environment, [scope.category])

    logger.info(f"Configuration {scope} rolled back to v{target_version} as v{record.version} by {actor}")
    return record


@translate_store_errors
def delete_config(scope: Scope, actor: str = "system", reason: Optional[str] = None) -> ConfigurationRecord:
    """
    Deactivate the active record of a scope. The row and its history are kept.

    Raises:
        NotFoundError: Nothing is active for the scope
    """
    with transaction.atomic():
        current = _lock_active(scope)
        if current is None:
            raise NotFoundError(f"No active configuration for {scope}")
        ConfigurationRecord.objects.filter(pk=current.pk).update(is_active=False, updated_at=timezone.now())
        record_history(current, ChangeType.DELETE, actor, old_value=current.value, reason=reason)

    invalidate_active_cache(scope.workspace_id, scope.environment, [scope.category])
    logger.info(f"Configuration {scope} v{current.version} deleted by {actor}")
    return current


def _coerce_update(item) -> ConfigUpdate:
    if isinstance(item, ConfigUpdate):
        return item
    if isinstance(item, dict):
        return ConfigUpdate(item["category"], item["key"], item.get("value"))
    return ConfigUpdate(*item)


@translate_store_errors
def bulk_update_config(
    workspace_id: str,
    environment: str,
    updates: Sequence,
    actor: str = "system",
    reason: Optional[str] = None,
    description: Optional[str] = None,
) -> BulkResult:
    """
    Apply several updates as one all-or-nothing transaction.

    Every update is validated before anything is written. If any update is
    invalid the whole batch is rejected with a single ValidationError; if a
    write fails the whole batch is rolled back.

    Args:
        workspace_id: Workspace to update
        environment: Environment all updates apply to
        updates: ConfigUpdate tuples, (category, key, value) tuples or dicts
        actor: Who made the change
        reason: Change reason recorded on every history entry

    Returns:
        BulkResult with the number of records written and the records
    """
    items = [_coerce_update(item) for item in updates]

    if not items:
        raise ValidationError(["At least one update is required"])

    max_items = _setting("CONFIG_BULK_MAX_ITEMS", MAX_BULK_ITEMS)
    if len(items) > max_items:
        raise ValidationError([f"Batch size {len(items)} exceeds maximum of {max_items} items"])

    failures = []
    warnings = []
    results = []
    seen = set()
    for item in items:
        if (item.category, item.key) in seen:
            failures.append((item.category, item.key, "Duplicate configuration key in batch"))
        seen.add((item.category, item.key))

        result = validators.validate(item.category, item.key, item.value)
        failures.extend((item.category, item.key, error) for error in result.errors)
        warnings.extend(result.warnings)
        results.append(result)

    if failures:
        raise ValidationError(
            [f"{category}.{key}: {message}" for category, key, message in failures],
            warnings,
            failures,
        )

    def _apply() -> List[ConfigurationRecord]:
        return [
            _write_version(
                Scope(workspace_id, item.category, item.key, environment),
                item.value,
                actor,
                reason=reason,
                description=description,
                validation=result,
            )
            for item, result in zip(items, results)
        ]

    records = _run_atomic_with_retry(f"bulk update of {workspace_id}[{environment}]", _apply)
    invalidate_active_cache(workspace_id, environment, [item.category for item in items])

    logger.info(f"Bulk configuration update of {workspace_id}[{environment}]: {len(records)} keys by {actor}")
    return BulkResult(len(records), records)
