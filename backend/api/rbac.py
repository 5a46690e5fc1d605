from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Tuple

from django.conf import settings
from django.db import DatabaseError, connection
import logging

from api.authentication import Principal

logger = logging.getLogger(__name__)

RIGHT_REQUISITION_CREATE = "REQUISITION_CREATE"
RIGHT_REQUISITION_AUTHORIZE = "REQUISITION_AUTHORIZE"
RIGHT_REQUISITION_APPROVE = "REQUISITION_APPROVE"
RIGHT_REQUISITION_DELETE = "REQUISITION_DELETE"
RIGHT_REQUISITION_VIEW = "REQUISITION_VIEW"
RIGHT_ORDERS_EDIT = "ORDERS_EDIT"
RIGHT_REQUISITION_TEMPLATES_MANAGE = "REQUISITION_TEMPLATES_MANAGE"

_DEV_ROLE_RIGHT_MAP = {
    "STOREROOM_MANAGER": {
        RIGHT_REQUISITION_CREATE,
        RIGHT_REQUISITION_DELETE,
        RIGHT_REQUISITION_VIEW,
    },
    "PROGRAM_SUPERVISOR": {
        RIGHT_REQUISITION_AUTHORIZE,
        RIGHT_REQUISITION_APPROVE,
        RIGHT_REQUISITION_DELETE,
        RIGHT_REQUISITION_VIEW,
    },
    "WAREHOUSE_CLERK": {
        RIGHT_ORDERS_EDIT,
        RIGHT_REQUISITION_VIEW,
    },
    "SYSTEM_ADMIN": {
        RIGHT_REQUISITION_TEMPLATES_MANAGE,
        RIGHT_REQUISITION_VIEW,
    },
}


@dataclass(frozen=True)
class RoleAssignment:
    """
    A role granted to a user, optionally limited to a scope.

    A ``None`` scope field places no restriction on that dimension.
    """

    role_code: str
    program_id: str | None = None
    facility_id: str | None = None
    supervisory_node_id: str | None = None
    warehouse_id: str | None = None


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def resolve_roles_and_permissions(
    request, principal: Principal
) -> Tuple[list[str], list[str]]:
    cache = _resolve(request, principal)
    return cache["roles"], cache["permissions"]


def resolve_role_assignments(
    request, principal: Principal
) -> Tuple[list[RoleAssignment], Dict[str, set[str]]]:
    """Scoped role assignments of the principal plus the rights of each role."""
    cache = _resolve(request, principal)
    return cache["assignments"], cache["role_rights"]


def _resolve(request, principal: Principal) -> dict:
    if hasattr(request, "_rbac_cache"):
        return request._rbac_cache

    roles: list[str] = [str(role).upper() for role in principal.roles or []]
    assignments: list[RoleAssignment] = [RoleAssignment(role_code=role) for role in roles]
    role_rights: Dict[str, set[str]] = {}
    db_error = False

    if _db_rbac_enabled():
        try:
            user_id = _resolve_user_id(principal)
            if user_id is not None:
                db_assignments = _fetch_role_assignments(user_id)
                assignments = list(dict.fromkeys(assignments + db_assignments))
                roles = _dedupe_preserve_order(
                    roles + [assignment.role_code for assignment in db_assignments]
                )
            if roles:
                role_rights = _fetch_rights_for_role_codes(roles)
        except DatabaseError as exc:
            db_error = True
            logger.warning("RBAC DB lookup failed: %s", exc)

    if not role_rights and not db_error:
        role_rights = _rights_for_roles(roles)

    permissions = _dedupe_preserve_order(
        right for role in roles for right in sorted(role_rights.get(role, set()))
    )

    request._rbac_cache = {
        "roles": roles,
        "permissions": permissions,
        "assignments": assignments,
        "role_rights": role_rights,
    }
    return request._rbac_cache


def _db_rbac_enabled() -> bool:
    if not settings.AUTH_USE_DB_RBAC:
        return False
    return settings.DATABASES["default"]["ENGINE"].endswith("postgresql")


def _resolve_user_id(principal: Principal) -> str | None:
    if principal.user_id:
        return str(principal.user_id)

    if not principal.username:
        return None

    with connection.cursor() as cursor:
        cursor.execute(
            'SELECT user_id FROM "user" WHERE username = %s OR email = %s LIMIT 1',
            [principal.username, principal.username],
        )
        row = cursor.fetchone()
        return str(row[0]) if row else None


def _fetch_role_assignments(user_id: str) -> list[RoleAssignment]:
    with connection.cursor() as cursor:
        cursor.execute(
            """
            SELECT r.code, ra.program_id, ra.facility_id, ra.supervisory_node_id, ra.warehouse_id
            FROM role_assignment ra
            JOIN role r ON r.id = ra.role_id
            WHERE ra.user_id = %s
            """,
            [user_id],
        )
        return [
            RoleAssignment(
                role_code=str(row[0]).upper(),
                program_id=_optional_str(row[1]),
                facility_id=_optional_str(row[2]),
                supervisory_node_id=_optional_str(row[3]),
                warehouse_id=_optional_str(row[4]),
            )
            for row in cursor.fetchall()
        ]


def _fetch_rights_for_role_codes(role_codes: Iterable[str]) -> Dict[str, set[str]]:
    normalized_codes = sorted(
        {str(code).strip().upper() for code in role_codes if str(code).strip()}
    )
    if not normalized_codes:
        return {}

    placeholders = ", ".join(["%s"] * len(normalized_codes))
    with connection.cursor() as cursor:
        cursor.execute(
            f"""
            SELECT DISTINCT UPPER(r.code), rt.name
            FROM role r
            JOIN role_right rr ON rr.role_id = r.id
            JOIN "right" rt ON rt.id = rr.right_id
            WHERE UPPER(r.code) IN ({placeholders})
            """,
            normalized_codes,
        )
        rights: Dict[str, set[str]] = {}
        for role_code, right_name in cursor.fetchall():
            rights.setdefault(role_code, set()).add(str(right_name).upper())
        return rights


def _rights_for_roles(roles: Iterable[str]) -> Dict[str, set[str]]:
    return {role: set(_DEV_ROLE_RIGHT_MAP.get(role.upper(), set())) for role in roles}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
