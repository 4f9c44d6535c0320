from django.db import DatabaseError, connection
from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from configuration import validators
from configuration.deployment import deploy_config, get_configured_targets, get_deployment
from configuration.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from configuration.models import Environment
from configuration.serializers import (
    ApplyTemplateSerializer,
    BulkUpdateSerializer,
    ConfigurationDeploymentSerializer,
    ConfigurationHistorySerializer,
    ConfigurationRecordSerializer,
    ConfigurationTemplateSerializer,
    ConfigurationWriteSerializer,
    DeploymentResultSerializer,
    DeploySerializer,
    EnvironmentPairSerializer,
    HistoryPageSerializer,
    HistoryQuerySerializer,
    ImportSerializer,
    RollbackSerializer,
    SyncSerializer,
    ValidateSerializer,
)
from configuration.services import (
    Scope,
    bulk_update_config,
    delete_config,
    get_active_configs,
    get_config_history,
    get_config_version,
    list_config_versions,
    rollback_config,
    write_config,
)
from configuration.transfer import (
    apply_template,
    compare_environments,
    export_config,
    get_templates,
    import_config,
    sync_environments,
)

ENVIRONMENT_PARAMETER = OpenApiParameter(
    name="environment",
    type=str,
    location=OpenApiParameter.QUERY,
    enum=Environment.values,
    description="Deployment tier (default: production)",
    required=False,
)


def _environment(request) -> str:
    environment = request.query_params.get("environment", Environment.PRODUCTION)
    if environment not in Environment.values:
        raise ValidationError([f"Unknown environment: {environment}"])
    return environment


def _actor(request, data=None) -> str:
    actor = (data or {}).get("actor") or request.query_params.get("actor")
    if actor:
        return actor
    user = getattr(request, "user", None)
    if user is not None and user.is_authenticated:
        return user.get_username()
    return "system"


class ConfigurationAPIView(APIView):
    """Maps configuration service errors onto HTTP responses."""

    def handle_exception(self, exc):
        if isinstance(exc, ValidationError):
            return Response(
                {
                    "detail": str(exc),
                    "errors": exc.errors,
                    "warnings": exc.warnings,
                    "failures": [
                        {"category": category, "key": key, "error": message}
                        for category, key, message in exc.failures
                    ],
                },
                status=status.HTTP_400_BAD_REQUEST,
            )
        if isinstance(exc, NotFoundError):
            return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
        if isinstance(exc, ConflictError):
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        if isinstance(exc, TransientStoreError):
            return Response(
                {"detail": f"Configuration store unavailable: {exc}"},
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        if isinstance(exc, ConfigurationError):
            return Response({"detail": str(exc)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return super().handle_exception(exc)


class WorkspaceConfigurationView(ConfigurationAPIView):
    """Read the active configuration of a workspace, or write one key."""

    @extend_schema(
        operation_id="get_workspace_configuration",
        summary="Read active configuration",
        description="Active configuration records of a workspace environment, ordered by category and key.",
        parameters=[
            ENVIRONMENT_PARAMETER,
            OpenApiParameter(
                name="category",
                type=str,
                location=OpenApiParameter.QUERY,
                description="Only return this category",
                required=False,
            ),
        ],
        responses={200: ConfigurationRecordSerializer(many=True)},
        tags=["Workspace Configuration"],
    )
    def get(self, request, workspace_id: str):
        records = get_active_configs(
            workspace_id,
            _environment(request),
            category=request.query_params.get("category"),
        )
        serializer = ConfigurationRecordSerializer(records, many=True)
        return Response({"count": len(serializer.data), "results": serializer.data})

    @extend_schema(
        operation_id="update_workspace_configuration",
        summary="Create or update a configuration key",
        description=(
            "Validates the value and stores it as a new active version. The previous "
            "version is deactivated and the change is recorded in the history."
        ),
        request=ConfigurationWriteSerializer,
        responses={
            200: OpenApiResponse(description="New version stored"),
            400: OpenApiResponse(description="Validation failed; nothing was written"),
            409: OpenApiResponse(description="Concurrent update conflict; retry"),
        },
        tags=["Workspace Configuration"],
    )
    def put(self, request, workspace_id: str):
        serializer = ConfigurationWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        record = write_config(
            Scope(workspace_id, data["category"], data["key"], data["environment"]),
            data["value"],
            actor=_actor(request, data),
            reason=data.get("reason"),
            description=data.get("description"),
            schema=data.get("validation_schema"),
        )
        return Response(
            {
                "configuration_id": record.id,
                "version": record.version,
                "configuration": ConfigurationRecordSerializer(record).data,
            }
        )


class BulkUpdateView(ConfigurationAPIView):
    @extend_schema(
        operation_id="bulk_update_workspace_configuration",
        summary="Update several configuration keys atomically",
        description="All updates are validated first and written in one transaction. Either all succeed or none.",
        request=BulkUpdateSerializer,
        responses={200: OpenApiResponse(description="All updates stored"), 400: OpenApiResponse(description="Batch rejected")},
        tags=["Workspace Configuration"],
    )
    def put(self, request, workspace_id: str):
        serializer = BulkUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = bulk_update_config(
            workspace_id,
            data["environment"],
            data["updates"],
            actor=_actor(request, data),
            reason=data.get("reason"),
        )
        return Response(
            {
                "updated_count": result.updated_count,
                "results": ConfigurationRecordSerializer(result.records, many=True).data,
            }
        )


class RollbackView(ConfigurationAPIView):
    @extend_schema(
        operation_id="rollback_workspace_configuration",
        summary="Roll a configuration key back to an earlier version",
        description="Stores the value of the target version as a new version. Version numbers are never reused.",
        request=RollbackSerializer,
        responses={200: OpenApiResponse(description="Rolled back"), 404: OpenApiResponse(description="Version not found")},
        tags=["Workspace Configuration"],
    )
    def post(self, request, workspace_id: str):
        serializer = RollbackSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        record = rollback_config(
            Scope(workspace_id, data["category"], data["key"], data["environment"]),
            data["target_version"],
            actor=_actor(request, data),
            reason=data.get("reason"),
        )
        return Response(
            {
                "new_configuration_id": record.id,
                "rolled_back_to_version": data["target_version"],
                "version": record.version,
                "configuration": ConfigurationRecordSerializer(record).data,
            }
        )


class HistoryView(ConfigurationAPIView):
    @extend_schema(
        operation_id="get_configuration_history",
        summary="Read the configuration audit history",
        parameters=[HistoryQuerySerializer],
        responses={200: HistoryPageSerializer},
        tags=["Workspace Configuration"],
    )
    def get(self, request, workspace_id: str):
        serializer = HistoryQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        query = serializer.validated_data

        page = get_config_history(workspace_id, **query)
        return Response(
            {
                "total": page.total,
                "count": len(page.entries),
                "limit": query["limit"],
                "offset": query["offset"],
                "results": ConfigurationHistorySerializer(page.entries, many=True).data,
            }
        )


class ValidateView(ConfigurationAPIView):
    @extend_schema(
        operation_id="validate_configuration",
        summary="Validate a value without storing it",
        request=ValidateSerializer,
        tags=["Workspace Configuration"],
    )
    def post(self, request, workspace_id: str):
        serializer = ValidateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = validators.validate(
            data["category"], data["key"], data["value"], data.get("validation_schema")
        )
        return Response({"is_valid": result.is_valid, "errors": result.errors, "warnings": result.warnings})


class DeployView(ConfigurationAPIView):
    @extend_schema(
        operation_id="deploy_configuration",
        summary="Deploy the active configuration to solutions",
        description=(
            "Pushes the active set to every target independently. Partial failure is "
            "reported with success=false and the lists of deployed and failed targets."
        ),
        request=DeploySerializer,
        responses={
            200: DeploymentResultSerializer,
            404: OpenApiResponse(description="Nothing to deploy"),
        },
        tags=["Deployment"],
    )
    def post(self, request, workspace_id: str):
        serializer = DeploySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = deploy_config(
            workspace_id,
            data["environment"],
            data["target_solution_ids"],
            categories=data.get("categories"),
            actor=_actor(request, data),
            reason=data.get("reason"),
        )
        return Response(
            {
                "deployment_id": result.deployment_id,
                "success": result.success,
                "deployed_targets": result.deployed_targets,
                "failed_targets": result.failed_targets,
                "errors": result.errors,
                "config_count": result.config_count,
            }
        )


class DeploymentDetailView(ConfigurationAPIView):
    @extend_schema(
        operation_id="get_configuration_deployment",
        responses={200: ConfigurationDeploymentSerializer},
        tags=["Deployment"],
    )
    def get(self, request, deployment_id: str):
        return Response(ConfigurationDeploymentSerializer(get_deployment(deployment_id)).data)


class ExportView(ConfigurationAPIView):
    @extend_schema(
        operation_id="export_configuration",
        parameters=[ENVIRONMENT_PARAMETER],
        tags=["Transfer"],
    )
    def get(self, request, workspace_id: str):
        environment = _environment(request)
        export = export_config(workspace_id, environment, actor=_actor(request))
        response = Response(export)
        response["Content-Disposition"] = (
            f'attachment; filename="workspace-config-{workspace_id}-{environment}.json"'
        )
        return response


class ImportView(ConfigurationAPIView):
    @extend_schema(
        operation_id="import_configuration",
        request=ImportSerializer,
        responses={200: OpenApiResponse(description="Imported"), 409: OpenApiResponse(description="Configuration exists")},
        tags=["Transfer"],
    )
    def post(self, request, workspace_id: str):
        serializer = ImportSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = import_config(
            workspace_id,
            data["environment"],
            data["configurations"],
            actor=_actor(request, data),
            overwrite_existing=data["overwrite_existing"],
        )
        return Response({"updated_count": result.updated_count})


class CompareView(ConfigurationAPIView):
    @extend_schema(
        operation_id="compare_configuration_environments",
        parameters=[EnvironmentPairSerializer],
        tags=["Transfer"],
    )
    def get(self, request, workspace_id: str):
        serializer = EnvironmentPairSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        return Response(
            compare_environments(
                workspace_id,
                data["source_environment"],
                data["target_environment"],
                data.get("categories"),
            )
        )


class SyncView(ConfigurationAPIView):
    @extend_schema(operation_id="sync_configuration_environments", request=SyncSerializer, tags=["Transfer"])
    def post(self, request, workspace_id: str):
        serializer = SyncSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = sync_environments(
            workspace_id,
            data["source_environment"],
            data["target_environment"],
            categories=data.get("categories"),
            actor=_actor(request, data),
            reason=data.get("reason"),
        )
        return Response({"updated_count": result.updated_count})


class ConfigurationKeyView(ConfigurationAPIView):
    @extend_schema(
        operation_id="delete_configuration_key",
        summary="Deactivate a configuration key",
        parameters=[ENVIRONMENT_PARAMETER],
        responses={204: OpenApiResponse(description="Deactivated"), 404: OpenApiResponse(description="Nothing active")},
        tags=["Workspace Configuration"],
    )
    def delete(self, request, workspace_id: str, category: str, key: str):
        delete_config(
            Scope(workspace_id, category, key, _environment(request)),
            actor=_actor(request),
            reason=request.query_params.get("reason"),
        )
        return Response(status=status.HTTP_204_NO_CONTENT)


class ConfigurationVersionsView(ConfigurationAPIView):
    @extend_schema(
        operation_id="list_configuration_versions",
        parameters=[ENVIRONMENT_PARAMETER],
        responses={200: ConfigurationRecordSerializer(many=True)},
        tags=["Workspace Configuration"],
    )
    def get(self, request, workspace_id: str, category: str, key: str):
        records = list_config_versions(Scope(workspace_id, category, key, _environment(request)))
        serializer = ConfigurationRecordSerializer(records, many=True)
        return Response({"count": len(serializer.data), "results": serializer.data})


class ConfigurationVersionDetailView(ConfigurationAPIView):
    @extend_schema(
        operation_id="get_configuration_version",
        parameters=[ENVIRONMENT_PARAMETER],
        responses={200: ConfigurationRecordSerializer, 404: OpenApiResponse(description="Version not found")},
        tags=["Workspace Configuration"],
    )
    def get(self, request, workspace_id: str, category: str, key: str, version: int):
        record = get_config_version(Scope(workspace_id, category, key, _environment(request)), version)
        return Response(ConfigurationRecordSerializer(record).data)


class TemplateListView(ConfigurationAPIView):
    @extend_schema(
        operation_id="list_configuration_templates",
        responses={200: ConfigurationTemplateSerializer(many=True)},
        tags=["Templates"],
    )
    def get(self, request, workspace_type: str):
        templates = get_templates(workspace_type.upper())
        return Response(ConfigurationTemplateSerializer(templates, many=True).data)


class ApplyTemplateView(ConfigurationAPIView):
    @extend_schema(operation_id="apply_configuration_template", request=ApplyTemplateSerializer, tags=["Templates"])
    def post(self, request, workspace_id: str, template_id: int):
        serializer = ApplyTemplateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = apply_template(workspace_id, data["environment"], template_id, actor=_actor(request, data))
        return Response({"updated_count": result.updated_count})


class HealthCheckView(APIView):
    """Health check and deployment target overview."""

    @extend_schema(
        operation_id="health_check",
        summary="Health check",
        description="Returns database reachability and the configured deployment targets.",
        responses={200: OpenApiResponse(description="Service is healthy")},
        tags=["Health & Monitoring"],
    )
    def get(self, request):
        try:
            connection.ensure_connection()
            database_ok = True
        except DatabaseError:
            database_ok = False

        return Response(
            {
                "status": "healthy" if database_ok else "degraded",
                "database": database_ok,
                "deployment_targets": sorted(get_configured_targets()),
            },
            status=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        )
