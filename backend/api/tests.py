from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient
from unittest.mock import patch

from api import rbac
from api.authentication import Principal, _parse_roles


class HealthEndpointTests(TestCase):
    def test_health(self) -> None:
        client = APIClient()
        response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


class AuthWhoAmITests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_ISSUER="https://issuer.example",
        AUTH_AUDIENCE="lmis-api",
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_ROLES_CLAIM="roles",
        AUTH_USE_DB_RBAC=False,
    )
    def test_whoami_requires_auth(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 401)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["VIEWER"],
        DEBUG=True,
        AUTH_USE_DB_RBAC=False,
    )
    def test_whoami_unknown_role_has_no_rights(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "dev-user")
        self.assertEqual(body["roles"], ["VIEWER"])
        self.assertEqual(body["permissions"], [])

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["storeroom_manager"],
        DEBUG=True,
        AUTH_USE_DB_RBAC=False,
    )
    def test_whoami_storeroom_manager_rights(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["roles"], ["STOREROOM_MANAGER"])
        self.assertIn("REQUISITION_CREATE", body["permissions"])
        self.assertIn("REQUISITION_VIEW", body["permissions"])
        self.assertNotIn("REQUISITION_APPROVE", body["permissions"])
        self.assertEqual(
            body["role_assignments"],
            [
                {
                    "role": "STOREROOM_MANAGER",
                    "program_id": None,
                    "facility_id": None,
                    "supervisory_node_id": None,
                    "warehouse_id": None,
                }
            ],
        )


class _Request:
    pass


class RbacResolutionTests(SimpleTestCase):
    @override_settings(AUTH_USE_DB_RBAC=False)
    def test_dev_role_map_used_without_db(self) -> None:
        principal = Principal(user_id="u1", username="u1", roles=["PROGRAM_SUPERVISOR"])

        roles, permissions = rbac.resolve_roles_and_permissions(_Request(), principal)

        self.assertEqual(roles, ["PROGRAM_SUPERVISOR"])
        self.assertIn("REQUISITION_APPROVE", permissions)
        self.assertIn("REQUISITION_AUTHORIZE", permissions)
        self.assertNotIn("REQUISITION_CREATE", permissions)

    @override_settings(AUTH_USE_DB_RBAC=False)
    def test_results_cached_on_request(self) -> None:
        request = _Request()
        principal = Principal(user_id="u1", username="u1", roles=["WAREHOUSE_CLERK"])

        first = rbac.resolve_roles_and_permissions(request, principal)
        principal.roles = ["SYSTEM_ADMIN"]
        second = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(first, second)

    @patch("api.rbac._fetch_rights_for_role_codes")
    @patch("api.rbac._fetch_role_assignments")
    @patch("api.rbac._resolve_user_id", return_value="u1")
    @patch("api.rbac._db_rbac_enabled", return_value=True)
    def test_db_assignments_merged_with_token_roles(
        self, _enabled, _user_id, fetch_assignments, fetch_rights
    ) -> None:
        fetch_assignments.return_value = [
            rbac.RoleAssignment(role_code="PROGRAM_SUPERVISOR", program_id="p1", supervisory_node_id="sn1"),
        ]
        fetch_rights.return_value = {
            "STOREROOM_MANAGER": {"REQUISITION_CREATE"},
            "PROGRAM_SUPERVISOR": {"REQUISITION_APPROVE"},
        }
        principal = Principal(user_id="u1", username="u1", roles=["STOREROOM_MANAGER"])
        request = _Request()

        roles, permissions = rbac.resolve_roles_and_permissions(request, principal)
        assignments, role_rights = rbac.resolve_role_assignments(request, principal)

        self.assertEqual(roles, ["STOREROOM_MANAGER", "PROGRAM_SUPERVISOR"])
        self.assertEqual(permissions, ["REQUISITION_CREATE", "REQUISITION_APPROVE"])
        self.assertEqual(len(assignments), 2)
        self.assertEqual(assignments[1].supervisory_node_id, "sn1")
        self.assertEqual(role_rights["PROGRAM_SUPERVISOR"], {"REQUISITION_APPROVE"})

    @patch("api.rbac._fetch_rights_for_role_codes", side_effect=DatabaseError("down"))
    @patch("api.rbac._fetch_role_assignments", return_value=[])
    @patch("api.rbac._resolve_user_id", return_value="u1")
    @patch("api.rbac._db_rbac_enabled", return_value=True)
    def test_db_failure_grants_nothing(self, *_mocks) -> None:
        principal = Principal(user_id="u1", username="u1", roles=["SYSTEM_ADMIN"])

        roles, permissions = rbac.resolve_roles_and_permissions(_Request(), principal)

        self.assertEqual(roles, ["SYSTEM_ADMIN"])
        self.assertEqual(permissions, [])


class RoleClaimParsingTests(SimpleTestCase):
    def test_parse_roles_variants(self) -> None:
        self.assertEqual(_parse_roles(None), [])
        self.assertEqual(_parse_roles(["A", "B"]), ["A", "B"])
        self.assertEqual(_parse_roles("A, B,"), ["A", "B"])
        self.assertEqual(_parse_roles("A"), ["A"])
