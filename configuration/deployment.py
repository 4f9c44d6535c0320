"""
Deployment of active configuration sets to external solutions.

A deployment snapshots the active set in one transaction, pushes it to
every target concurrently with no database lock held, and records the
outcome in a second transaction. Targets are independent: a failing or
timed-out target never aborts the others, and partial success is returned
as data rather than raised.
"""

import logging
import random
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import transaction
from django.utils import timezone

from configuration.exceptions import (
    DeploymentPartialFailure,
    NotFoundError,
    NothingToDeployError,
    ValidationError,
)
from configuration.models import (
    ChangeType,
    ConfigurationDeployment,
    ConfigurationHistory,
    ConfigurationRecord,
    DeploymentStatus,
    Environment,
)
from configuration.services import invalidate_active_cache, record_history, translate_store_errors

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30  # seconds, per target
POLL_INTERVAL = 0.05  # seconds
APPLY_PATH = "/configurations/apply/"


class DeploymentOutcome(NamedTuple):
    target_id: str
    success: bool
    error: Optional[str] = None


class DeploymentTarget:
    """An external solution that accepts pushed configuration sets."""

    def __init__(self, target_id: str):
        self.target_id = target_id

    def push(self, config_set: Dict, timeout: float) -> DeploymentOutcome:
        raise NotImplementedError


class HttpDeploymentTarget(DeploymentTarget):
    """Solution reachable over HTTP; receives the set as a JSON POST."""

    def __init__(self, target_id: str, url: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(target_id)
        self.url = url
        self.headers = headers or {}

    def push(self, config_set: Dict, timeout: float) -> DeploymentOutcome:
        url = f"{self.url.rstrip('/')}{APPLY_PATH}"
        try:
            response = requests.post(
                url,
                json=config_set,
                headers={"X-Config-Deployment": "true", **self.headers},
                timeout=timeout,
            )
        except requests.Timeout:
            logger.warning(f"Deployment to {self.target_id} timed out after {timeout}s")
            return DeploymentOutcome(self.target_id, False, f"Timed out after {timeout}s")
        except requests.RequestException as e:
            logger.warning(f"Error deploying to {self.target_id} at {url}: {e}")
            return DeploymentOutcome(self.target_id, False, str(e))

        if 200 <= response.status_code < 300:
            logger.debug(f"Successfully deployed to {self.target_id}")
            return DeploymentOutcome(self.target_id, True)

        logger.warning(f"Failed to deploy to {self.target_id}: {response.status_code}")
        return DeploymentOutcome(self.target_id, False, f"Solution responded with {response.status_code}")


class SimulatedDeploymentTarget(DeploymentTarget):
    """Stand-in for a solution: waits, then fails with ``failure_rate`` probability."""

    def __init__(self, target_id: str, failure_rate: float = 0.1, delay: float = 2.0, rng: Optional[random.Random] = None):
        super().__init__(target_id)
        self.failure_rate = failure_rate
        self.delay = delay
        self.rng = rng or random.Random()

    def push(self, config_set: Dict, timeout: float) -> DeploymentOutcome:
        if self.delay > timeout:
            time.sleep(timeout)
            return DeploymentOutcome(self.target_id, False, f"Timed out after {timeout}s")
        time.sleep(self.delay)
        if self.rng.random() < self.failure_rate:
            return DeploymentOutcome(self.target_id, False, "Deployment simulation failed")
        return DeploymentOutcome(self.target_id, True)


TargetResolver = Callable[[str], Optional[DeploymentTarget]]


class DeploymentResult(NamedTuple):
    deployment_id: str
    deployed_targets: List[str]
    failed_targets: List[str]
    errors: Dict[str, str]
    config_count: int

    @property
    def success(self) -> bool:
        return not self.failed_targets

    def raise_for_failures(self) -> None:
        if self.failed_targets:
            raise DeploymentPartialFailure(self)


def get_configured_targets() -> Dict[str, Dict]:
    """
    Get deployment targets from settings.

    Returns:
        Mapping of target id to ``{"url": ...}`` or ``{"simulated": True, ...}``
    """
    return getattr(settings, "CONFIG_DEPLOYMENT_TARGETS", {})


def resolve_target(target_id: str) -> Optional[DeploymentTarget]:
    entry = get_configured_targets().get(target_id)
    if entry is None:
        return None
    if entry.get("simulated"):
        return SimulatedDeploymentTarget(
            target_id,
            failure_rate=entry.get("failure_rate", 0.1),
            delay=entry.get("delay", 2.0),
        )
    if not entry.get("url"):
        raise ImproperlyConfigured(f"Deployment target {target_id} has no url")
    return HttpDeploymentTarget(target_id, entry["url"], entry.get("headers"))


def build_config_set(workspace_id: str, environment: str, records: Iterable[ConfigurationRecord]) -> Dict:
    """Payload pushed to solutions: ``{category: {key: value}}`` plus versions."""
    configurations: Dict[str, Dict] = {}
    versions: Dict[str, Dict] = {}
    for record in records:
        configurations.setdefault(record.config_category, {})[record.config_key] = record.value
        versions.setdefault(record.config_category, {})[record.config_key] = record.version
    return {
        "workspace_id": workspace_id,
        "environment": environment,
        "configurations": configurations,
        "versions": versions,
    }


def _push(
    target_id: str,
    resolver: TargetResolver,
    config_set: Dict,
    timeout: float,
    cancel_event: Optional[threading.Event],
    started: Dict[str, float],
) -> DeploymentOutcome:
    if cancel_event is not None and cancel_event.is_set():
        return DeploymentOutcome(target_id, False, "Deployment cancelled before start")

    started[target_id] = time.monotonic()
    try:
        target = resolver(target_id)
        if target is None:
            return DeploymentOutcome(target_id, False, "Unknown deployment target")
        return target.push(config_set, timeout)
    except Exception as e:
        # Recorded as this target's failure; other targets carry on.
        logger.exception(f"Deployment target {target_id} raised during push")
        return DeploymentOutcome(target_id, False, str(e))


def _dispatch(
    target_ids: Sequence[str],
    resolver: TargetResolver,
    config_set: Dict,
    timeout: float,
    cancel_event: Optional[threading.Event],
) -> List[DeploymentOutcome]:
    """
    Push to every target concurrently and collect one outcome per target.

    Every target gets its own worker, so a hung push never delays the
    others. Each push is timed from the moment it starts. A push still
    running past its timeout is reported as failed and left to finish in
    the background.
    """
    executor = ThreadPoolExecutor(max_workers=len(target_ids), thread_name_prefix="config-deploy")
    started: Dict[str, float] = {}
    outcomes: Dict[str, DeploymentOutcome] = {}
    try:
        pending = {
            target_id: executor.submit(_push, target_id, resolver, config_set, timeout, cancel_event, started)
            for target_id in target_ids
        }
        while pending:
            wait(pending.values(), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
            now = time.monotonic()
            for target_id, future in list(pending.items()):
                if future.done():
                    outcomes[target_id] = future.result()
                    del pending[target_id]
                elif target_id in started and now - started[target_id] > timeout:
                    logger.warning(f"Deployment to {target_id} exceeded {timeout}s, marking failed")
                    outcomes[target_id] = DeploymentOutcome(target_id, False, f"Timed out after {timeout}s")
                    del pending[target_id]
    finally:
        executor.shutdown(wait=False)

    return [outcomes[target_id] for target_id in target_ids]


@translate_store_errors
def deploy_config(
    workspace_id: str,
    environment: str = Environment.PRODUCTION,
    target_ids: Sequence[str] = (),
    categories: Optional[Sequence[str]] = None,
    actor: str = "system",
    reason: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    resolver: Optional[TargetResolver] = None,
    timeout: Optional[float] = None,
) -> DeploymentResult:
    """
    Push the active configuration set of a workspace/environment to solutions.

    Args:
        workspace_id: Workspace to deploy
        environment: Environment whose active set is deployed
        target_ids: Solutions to push to
        categories: Restrict the set to these categories
        actor: Who requested the deployment
        reason: Change reason recorded on the deploy history entries
        cancel_event: When set, targets that have not started are skipped
        resolver: Maps a target id to a DeploymentTarget (defaults to settings)
        timeout: Per-target timeout in seconds

    Returns:
        DeploymentResult listing deployed and failed targets

    Raises:
        NothingToDeployError: The selected active set is empty
    """
    target_ids = list(dict.fromkeys(target_ids))
    if not target_ids:
        raise ValidationError(["At least one deployment target is required"])
    resolver = resolver or resolve_target
    if timeout is None:
        timeout = getattr(settings, "CONFIG_DEPLOYMENT_TIMEOUT", DEFAULT_TIMEOUT)

    with transaction.atomic():
        queryset = ConfigurationRecord.objects.select_for_update().filter(
            workspace_id=workspace_id,
            environment=environment,
            is_active=True,
        )
        if categories:
            queryset = queryset.filter(config_category__in=categories)
        records = list(queryset.order_by("config_category", "config_key"))
        if not records:
            raise NothingToDeployError("No configurations found to deploy")

        record_ids = [record.pk for record in records]
        ConfigurationRecord.objects.filter(pk__in=record_ids).update(
            deployment_status=DeploymentStatus.DEPLOYING,
            updated_at=timezone.now(),
        )
        deployment = ConfigurationDeployment.objects.create(
            deployment_id=f"deploy-{uuid.uuid4().hex[:12]}",
            workspace_id=workspace_id,
            environment=environment,
            categories=list(categories) if categories else None,
            target_ids=target_ids,
            config_count=len(records),
            created_by=actor,
        )

    touched_categories = {record.config_category for record in records}
    invalidate_active_cache(workspace_id, environment, touched_categories)

    logger.info(
        f"Deploying {len(records)} configurations of {workspace_id}[{environment}] "
        f"to {len(target_ids)} targets as {deployment.deployment_id}"
    )
    try:
        config_set = build_config_set(workspace_id, environment, records)
        outcomes = _dispatch(target_ids, resolver, config_set, timeout, cancel_event)
    except Exception as e:
        # The snapshot must still leave the deploying state.
        logger.exception(f"Deployment {deployment.deployment_id} aborted")
        outcomes = [DeploymentOutcome(target_id, False, f"Deployment aborted: {e}") for target_id in target_ids]

    deployed = [outcome.target_id for outcome in outcomes if outcome.success]
    failed = [outcome.target_id for outcome in outcomes if not outcome.success]
    errors = {outcome.target_id: outcome.error for outcome in outcomes if not outcome.success}
    status = DeploymentStatus.FAILED if failed else DeploymentStatus.DEPLOYED
    completed_at = timezone.now()

    with transaction.atomic():
        fields = {"deployment_status": status, "updated_at": completed_at}
        if not failed:
            fields.update(deployed_to_solution=True, deployed_at=completed_at)
        ConfigurationRecord.objects.filter(pk__in=record_ids).update(**fields)

        description = f"Deployed to solutions {', '.join(deployed) or '-'}"
        if failed:
            description += f"; failed for {', '.join(failed)}"
        entry_ids = [
            record_history(
                record,
                ChangeType.DEPLOY,
                actor,
                new_value=record.value,
                reason=reason,
                description=description,
            ).pk
            for record in records
        ]
        if not failed:
            ConfigurationHistory.objects.filter(pk__in=entry_ids).stamp_applied(completed_at)

        ConfigurationDeployment.objects.filter(pk=deployment.pk).update(
            deployed_targets=deployed,
            failed_targets=failed,
            errors=errors,
            status=status,
            completed_at=completed_at,
        )

    invalidate_active_cache(workspace_id, environment, touched_categories)

    if failed:
        logger.error(
            f"Deployment {deployment.deployment_id} partially failed: "
            f"{len(deployed)}/{len(target_ids)} targets, failed: {', '.join(failed)}"
        )
    else:
        logger.info(f"Deployment {deployment.deployment_id} succeeded on {len(deployed)} targets")

    return DeploymentResult(deployment.deployment_id, deployed, failed, errors, len(records))


@translate_store_errors
def get_deployment(deployment_id: str) -> ConfigurationDeployment:
    try:
        return ConfigurationDeployment.objects.get(deployment_id=deployment_id)
    except ConfigurationDeployment.DoesNotExist as exc:
        raise NotFoundError(f"Deployment {deployment_id} not found") from exc
