"""Built-in module definitions."""

from .content_types import ContentTypeDescriptor, JsonCollection, OffsetPaginated, ScriptCode
from .registry import ModuleDefinition

EMPTY_REQUEST = {"request_data": {}}
EXTENDED_REQUEST = {"request_data": {"extended_view": True}}


# =============================================================================
# XSIAM
# =============================================================================

# Scripts come first: correlation rules and widgets can reference them.
XSIAM = ModuleDefinition(
    name="xsiam",
    title="XSIAM",
    base_api_path="/public_api/v1",
    content_types=(
        # Listing returns metadata only; code is fetched per script_uid
        ContentTypeDescriptor(
            name="scripts",
            endpoint="scripts/get_scripts",
            id_field="script_uid",
            pull_strategy=ScriptCode(
                list_endpoint="scripts/get_scripts",
                code_endpoint="scripts/get_script_code",
                list_response_path="reply.scripts",
                uid_field="script_uid",
            ),
            method="POST",
            request_body=EMPTY_REQUEST,
        ),
        ContentTypeDescriptor(
            name="dashboards",
            endpoint="dashboards/get",
            id_field="global_id",
            pull_strategy=JsonCollection(),
            method="POST",
            request_body=EMPTY_REQUEST,
            response_path="objects[0].dashboards_data",
            fallback_id_fields=("default_dashboard_id", "dashboard_id", "id"),
        ),
        ContentTypeDescriptor(
            name="widgets",
            endpoint="widgets/get",
            id_field="creation_time",
            pull_strategy=JsonCollection(),
            method="POST",
            request_body=EMPTY_REQUEST,
            response_path="objects[0].widgets_data",
            fallback_id_fields=("global_id", "widget_id", "id"),
        ),
        ContentTypeDescriptor(
            name="biocs",
            endpoint="bioc/get",
            id_field="rule_id",
            pull_strategy=JsonCollection(),
            method="POST",
            request_body=EXTENDED_REQUEST,
            response_path="objects",
            fallback_id_fields=("id",),
        ),
        ContentTypeDescriptor(
            name="correlation_searches",
            endpoint="correlations/get",
            id_field="rule_id",
            pull_strategy=JsonCollection(),
            method="POST",
            request_body=EXTENDED_REQUEST,
            response_path="objects",
            fallback_id_fields=("id",),
        ),
        ContentTypeDescriptor(
            name="authentication_settings",
            endpoint="authentication-settings/get/settings",
            id_field="name",
            pull_strategy=JsonCollection(),
            method="POST",
            request_body=EMPTY_REQUEST,
            response_path="reply",
            fallback_id_fields=("setting_name", "type"),
        ),
        ContentTypeDescriptor(
            name="scheduled_queries",
            endpoint="scheduled_queries/list",
            id_field="query_def_id",
            pull_strategy=JsonCollection(),
            method="POST",
            request_body=EXTENDED_REQUEST,
            response_path="reply.DATA",
        ),
        # Served from /public_api/xql_library/get, outside /v1
        ContentTypeDescriptor(
            name="xql_library",
            endpoint="../xql_library/get",
            id_field="id",
            pull_strategy=JsonCollection(),
            method="POST",
            request_body=EXTENDED_REQUEST,
            response_path="reply.xql_queries",
        ),
        ContentTypeDescriptor(
            name="rbac_users",
            endpoint="rbac/get_users",
            id_field="user_email",
            pull_strategy=JsonCollection(),
            method="POST",
            request_body=EMPTY_REQUEST,
            response_path="reply",
        ),
    ),
)


# =============================================================================
# Application Security
# =============================================================================

APPSEC = ModuleDefinition(
    name="appsec",
    title="Application Security",
    base_api_path="/public_api",
    content_types=(
        ContentTypeDescriptor(
            name="applications",
            endpoint="appsec/v1/application",
            id_field="id",
            pull_strategy=OffsetPaginated(
                offset_param="page",
                limit_param="pageSize",
                page_size=100,
                page_numbers=True,
                start=1,
            ),
            response_path="data",
        ),
        ContentTypeDescriptor(
            name="policies",
            endpoint="appsec/v1/policies",
            id_field="id",
        ),
        # Responds with {"offset": n, "rules": [...]}
        ContentTypeDescriptor(
            name="rules",
            endpoint="appsec/v1/rules",
            id_field="id",
            response_path="rules",
        ),
        ContentTypeDescriptor(
            name="repositories",
            endpoint="appsec/v1/repositories",
            id_field="assetId",
        ),
        ContentTypeDescriptor(
            name="integrations",
            endpoint="appsec/v1/integrations",
            id_field="id",
        ),
    ),
)
