from django.contrib import admin

from configuration.models import (
    ConfigurationDeployment,
    ConfigurationHistory,
    ConfigurationRecord,
    ConfigurationTemplate,
)


@admin.register(ConfigurationRecord)
class ConfigurationRecordAdmin(admin.ModelAdmin):
    list_display = ("workspace_id", "config_category", "config_key", "environment", "version", "is_active", "deployment_status")
    list_filter = ("environment", "is_active", "deployment_status")
    search_fields = ("workspace_id", "config_category", "config_key")
    ordering = ("workspace_id", "config_category", "config_key", "-version")


@admin.register(ConfigurationHistory)
class ConfigurationHistoryAdmin(admin.ModelAdmin):
    list_display = ("workspace_id", "change_type", "config_category", "config_key", "changed_by", "changed_at")
    list_filter = ("change_type", "environment")
    search_fields = ("workspace_id", "config_key", "changed_by")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(ConfigurationDeployment)
class ConfigurationDeploymentAdmin(admin.ModelAdmin):
    list_display = ("deployment_id", "workspace_id", "environment", "status", "created_at")
    list_filter = ("status", "environment")


@admin.register(ConfigurationTemplate)
class ConfigurationTemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "workspace_type", "is_default")
    list_filter = ("workspace_type",)
