from django.urls import path

from configuration.views import (
    ApplyTemplateView,
    BulkUpdateView,
    CompareView,
    ConfigurationKeyView,
    ConfigurationVersionDetailView,
    ConfigurationVersionsView,
    DeploymentDetailView,
    DeployView,
    ExportView,
    HealthCheckView,
    HistoryView,
    ImportView,
    RollbackView,
    SyncView,
    TemplateListView,
    ValidateView,
    WorkspaceConfigurationView,
)

app_name = "configuration"

WORKSPACE = "workspaces/<str:workspace_id>/configurations/"
KEY = WORKSPACE + "<str:category>/<str:key>/"

urlpatterns = [
    path(WORKSPACE + "bulk/", BulkUpdateView.as_view(), name="config-bulk"),
    path(WORKSPACE + "rollback/", RollbackView.as_view(), name="config-rollback"),
    path(WORKSPACE + "history/", HistoryView.as_view(), name="config-history"),
    path(WORKSPACE + "validate/", ValidateView.as_view(), name="config-validate"),
    path(WORKSPACE + "deploy/", DeployView.as_view(), name="config-deploy"),
    path(WORKSPACE + "export/", ExportView.as_view(), name="config-export"),
    path(WORKSPACE + "import/", ImportView.as_view(), name="config-import"),
    path(WORKSPACE + "compare/", CompareView.as_view(), name="config-compare"),
    path(WORKSPACE + "sync/", SyncView.as_view(), name="config-sync"),
    path(WORKSPACE + "templates/<int:template_id>/apply/", ApplyTemplateView.as_view(), name="config-template-apply"),
    path(KEY + "versions/<int:version>/", ConfigurationVersionDetailView.as_view(), name="config-version-detail"),
    path(KEY + "versions/", ConfigurationVersionsView.as_view(), name="config-versions"),
    path(KEY, ConfigurationKeyView.as_view(), name="config-key"),
    path(WORKSPACE, WorkspaceConfigurationView.as_view(), name="config-detail"),
    path("deployments/<str:deployment_id>/", DeploymentDetailView.as_view(), name="deployment-detail"),
    path("configuration-templates/<str:workspace_type>/", TemplateListView.as_view(), name="template-list"),
    path("health/", HealthCheckView.as_view(), name="health"),
]
