from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from api.authentication import LmisAuthentication
from api.rbac import resolve_role_assignments, resolve_roles_and_permissions


@api_view(["GET"])
def health(request):
    return Response({"status": "ok"})


@api_view(["GET"])
@authentication_classes([LmisAuthentication])
@permission_classes([IsAuthenticated])
def whoami(request):
    roles, permissions = resolve_roles_and_permissions(request, request.user)
    assignments, _ = resolve_role_assignments(request, request.user)
    return Response(
        {
            "user_id": request.user.user_id,
            "username": request.user.username,
            "roles": roles,
            "permissions": sorted(permissions),
            "role_assignments": [
                {
                    "role": assignment.role_code,
                    "program_id": assignment.program_id,
                    "facility_id": assignment.facility_id,
                    "supervisory_node_id": assignment.supervisory_node_id,
                    "warehouse_id": assignment.warehouse_id,
                }
                for assignment in assignments
            ],
        }
    )
