from django.db import models
from django.db.models import Q


class Environment(models.TextChoices):
    DEVELOPMENT = "development", "Development"
    STAGING = "staging", "Staging"
    PRODUCTION = "production", "Production"


class DeploymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    DEPLOYING = "deploying", "Deploying"
    DEPLOYED = "deployed", "Deployed"
    FAILED = "failed", "Failed"


class ChangeType(models.TextChoices):
    CREATE = "create", "Create"
    UPDATE = "update", "Update"
    DELETE = "delete", "Delete"
    ROLLBACK = "rollback", "Rollback"
    DEPLOY = "deploy", "Deploy"


class WorkspaceType(models.TextChoices):
    KMS = "KMS", "Knowledge management"
    ADVISOR = "ADVISOR", "Advisor"
    COMMON = "COMMON", "Common"


class ConfigurationRecord(models.Model):
    """
    One version of one configuration setting.

    Rows are insert-only: a change inserts a new version and flips the
    previous active row off. Only ``is_active`` and the deployment fields
    are ever updated in place.
    """

    workspace_id = models.CharField(max_length=64)
    config_category = models.CharField(max_length=100)
    config_key = models.CharField(max_length=255)
    environment = models.CharField(
        max_length=20,
        choices=Environment.choices,
        default=Environment.PRODUCTION,
    )
    version = models.PositiveIntegerField()
    value = models.JSONField()
    is_active = models.BooleanField(default=True)
    is_validated = models.BooleanField(default=False)
    validation_errors = models.JSONField(default=list, blank=True)
    deployment_status = models.CharField(
        max_length=20,
        choices=DeploymentStatus.choices,
        default=DeploymentStatus.PENDING,
    )
    deployed_to_solution = models.BooleanField(default=False)
    deployed_at = models.DateTimeField(null=True, blank=True)
    created_by = models.CharField(max_length=255, default="system")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["config_category", "config_key", "-version"]
        constraints = [
            models.UniqueConstraint(
                fields=["workspace_id", "config_category", "config_key", "environment", "version"],
                name="unique_config_scope_version",
            ),
            models.UniqueConstraint(
                fields=["workspace_id", "config_category", "config_key", "environment"],
                condition=Q(is_active=True),
                name="single_active_config_per_scope",
            ),
        ]
        indexes = [
            models.Index(
                fields=["workspace_id", "environment", "is_active"],
                name="config_active_lookup_idx",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"{self.workspace_id}/{self.config_category}.{self.config_key}"
            f"[{self.environment}] (v{self.version})"
        )


class HistoryQuerySet(models.QuerySet):
    def stamp_applied(self, applied_at) -> int:
        """The one mutation allowed on history rows."""
        return self.filter(applied_at__isnull=True).update(applied_at=applied_at)


class ConfigurationHistory(models.Model):
    """Append-only audit entry for a configuration change."""

    workspace_id = models.CharField(max_length=64)
    configuration = models.ForeignKey(
        ConfigurationRecord,
        on_delete=models.PROTECT,
        related_name="history_entries",
        null=True,
        blank=True,
    )
    change_type = models.CharField(max_length=20, choices=ChangeType.choices)
    config_category = models.CharField(max_length=100)
    config_key = models.CharField(max_length=255)
    environment = models.CharField(max_length=20, choices=Environment.choices)
    old_value = models.JSONField(null=True, blank=True)
    new_value = models.JSONField(null=True, blank=True)
    change_reason = models.TextField(blank=True, default="")
    change_description = models.TextField(blank=True, default="")
    changed_by = models.CharField(max_length=255)
    changed_at = models.DateTimeField(auto_now_add=True, db_index=True)
    applied_at = models.DateTimeField(null=True, blank=True)

    objects = HistoryQuerySet.as_manager()

    class Meta:
        ordering = ["-changed_at", "-id"]
        verbose_name_plural = "configuration history"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise RuntimeError("Configuration history entries are immutable")
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.change_type} {self.config_category}.{self.config_key} by {self.changed_by}"


class ConfigurationDeployment(models.Model):
    """One push of an active configuration set to a list of solutions."""

    deployment_id = models.CharField(max_length=64, unique=True)
    workspace_id = models.CharField(max_length=64)
    environment = models.CharField(max_length=20, choices=Environment.choices)
    categories = models.JSONField(null=True, blank=True)
    target_ids = models.JSONField(default=list)
    deployed_targets = models.JSONField(default=list)
    failed_targets = models.JSONField(default=list)
    errors = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=20,
        choices=DeploymentStatus.choices,
        default=DeploymentStatus.DEPLOYING,
    )
    config_count = models.PositiveIntegerField(default=0)
    created_by = models.CharField(max_length=255, default="system")
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.deployment_id} ({self.status})"


class ConfigurationTemplate(models.Model):
    name = models.CharField(max_length=255)
    workspace_type = models.CharField(max_length=20, choices=WorkspaceType.choices)
    template_config = models.JSONField(default=dict)
    description = models.TextField(blank=True, default="")
    is_default = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-is_default", "name"]

    def __str__(self) -> str:
        return f"{self.name} [{self.workspace_type}]"
