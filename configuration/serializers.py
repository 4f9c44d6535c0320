from rest_framework import serializers

from configuration.models import (
    ChangeType,
    ConfigurationDeployment,
    ConfigurationHistory,
    ConfigurationRecord,
    ConfigurationTemplate,
    Environment,
)
from configuration.services import DEFAULT_HISTORY_LIMIT, MAX_BULK_ITEMS, MAX_HISTORY_LIMIT


class ConfigurationRecordSerializer(serializers.ModelSerializer):
    """Serializer for configuration versions with metadata."""

    class Meta:
        model = ConfigurationRecord
        fields = [
            "id",
            "workspace_id",
            "config_category",
            "config_key",
            "environment",
            "version",
            "value",
            "is_active",
            "is_validated",
            "validation_errors",
            "deployment_status",
            "deployed_to_solution",
            "deployed_at",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class ConfigurationHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = ConfigurationHistory
        fields = [
            "id",
            "workspace_id",
            "configuration_id",
            "change_type",
            "config_category",
            "config_key",
            "environment",
            "old_value",
            "new_value",
            "change_reason",
            "change_description",
            "changed_by",
            "changed_at",
            "applied_at",
        ]
        read_only_fields = fields


class ConfigurationDeploymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = ConfigurationDeployment
        fields = [
            "deployment_id",
            "workspace_id",
            "environment",
            "categories",
            "target_ids",
            "deployed_targets",
            "failed_targets",
            "errors",
            "status",
            "config_count",
            "created_by",
            "created_at",
            "completed_at",
        ]
        read_only_fields = fields


class ConfigurationTemplateSerializer(serializers.ModelSerializer):
    class Meta:
        model = ConfigurationTemplate
        fields = ["id", "name", "workspace_type", "template_config", "description", "is_default"]
        read_only_fields = fields


class ActorSerializer(serializers.Serializer):
    actor = serializers.CharField(
        required=False,
        max_length=255,
        help_text="Who makes the change. Defaults to the authenticated user, then 'system'.",
    )


class ConfigurationWriteSerializer(ActorSerializer):
    """Serializer for creating/updating one configuration key."""

    category = serializers.CharField(max_length=100)
    key = serializers.CharField(max_length=255)
    value = serializers.JSONField(help_text="The value to store. Any JSON document except null.")
    environment = serializers.ChoiceField(choices=Environment.choices, default=Environment.PRODUCTION)
    reason = serializers.CharField(required=False, allow_blank=True)
    description = serializers.CharField(required=False, allow_blank=True)
    validation_schema = serializers.JSONField(
        required=False,
        help_text="Optional JSON schema the value must satisfy.",
    )


class BulkItemSerializer(serializers.Serializer):
    """Serializer for a single item in a bulk update."""

    category = serializers.CharField(max_length=100)
    key = serializers.CharField(max_length=255)
    value = serializers.JSONField()


class BulkUpdateSerializer(ActorSerializer):
    """Serializer for bulk update operations."""

    environment = serializers.ChoiceField(choices=Environment.choices, default=Environment.PRODUCTION)
    updates = BulkItemSerializer(
        many=True,
        help_text="Updates applied in a single all-or-nothing transaction",
    )
    reason = serializers.CharField(required=False, allow_blank=True)

    def validate_updates(self, updates):
        if not updates:
            raise serializers.ValidationError("At least one update is required")
        if len(updates) > MAX_BULK_ITEMS:
            raise serializers.ValidationError(
                f"Batch size {len(updates)} exceeds maximum of {MAX_BULK_ITEMS} items"
            )
        return updates


class RollbackSerializer(ActorSerializer):
    category = serializers.CharField(max_length=100)
    key = serializers.CharField(max_length=255)
    target_version = serializers.IntegerField(min_value=1)
    environment = serializers.ChoiceField(choices=Environment.choices, default=Environment.PRODUCTION)
    reason = serializers.CharField(required=False, allow_blank=True)


class ValidateSerializer(serializers.Serializer):
    category = serializers.CharField(max_length=100)
    key = serializers.CharField(max_length=255)
    value = serializers.JSONField(allow_null=True)
    validation_schema = serializers.JSONField(required=False)


class DeploySerializer(ActorSerializer):
    environment = serializers.ChoiceField(choices=Environment.choices, default=Environment.PRODUCTION)
    target_solution_ids = serializers.ListField(
        child=serializers.CharField(max_length=255),
        allow_empty=False,
    )
    categories = serializers.ListField(
        child=serializers.CharField(max_length=100),
        required=False,
        allow_empty=False,
    )
    reason = serializers.CharField(required=False, allow_blank=True)


class DeploymentResultSerializer(serializers.Serializer):
    deployment_id = serializers.CharField()
    success = serializers.BooleanField()
    deployed_targets = serializers.ListField(child=serializers.CharField())
    failed_targets = serializers.ListField(child=serializers.CharField())
    errors = serializers.DictField(child=serializers.CharField(allow_null=True))
    config_count = serializers.IntegerField()


class HistoryQuerySerializer(serializers.Serializer):
    category = serializers.CharField(required=False)
    key = serializers.CharField(required=False)
    environment = serializers.ChoiceField(choices=Environment.choices, required=False)
    change_type = serializers.ChoiceField(choices=ChangeType.choices, required=False)
    changed_by = serializers.CharField(required=False)
    changed_since = serializers.DateTimeField(required=False)
    changed_until = serializers.DateTimeField(required=False)
    limit = serializers.IntegerField(min_value=1, max_value=MAX_HISTORY_LIMIT, default=DEFAULT_HISTORY_LIMIT)
    offset = serializers.IntegerField(min_value=0, default=0)


class HistoryPageSerializer(serializers.Serializer):
    total = serializers.IntegerField(help_text="Number of entries matching the filters")
    results = ConfigurationHistorySerializer(many=True)


class ImportSerializer(ActorSerializer):
    environment = serializers.ChoiceField(choices=Environment.choices, default=Environment.DEVELOPMENT)
    configurations = serializers.DictField(child=serializers.JSONField())
    overwrite_existing = serializers.BooleanField(default=False)


class EnvironmentPairSerializer(serializers.Serializer):
    source_environment = serializers.ChoiceField(choices=Environment.choices)
    target_environment = serializers.ChoiceField(choices=Environment.choices)
    categories = serializers.ListField(child=serializers.CharField(), required=False)


class SyncSerializer(ActorSerializer, EnvironmentPairSerializer):
    reason = serializers.CharField(required=False, allow_blank=True)


class ApplyTemplateSerializer(ActorSerializer):
    environment = serializers.ChoiceField(choices=Environment.choices, default=Environment.PRODUCTION)
