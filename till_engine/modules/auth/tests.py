"""
Tests para permisos derivados del rol
"""

import pytest

from till_engine.modules.auth.permissions import Permissions, Role, normalize_role


class TestNormalizeRole:
    @pytest.mark.parametrize("raw, expected", [
        ("owner", Role.OWNER),
        (" Manager ", Role.MANAGER),
        ("ADMIN", Role.ADMIN),
        ("cashier", Role.CASHIER),
        ("auditor", Role.UNKNOWN),
        (None, Role.UNKNOWN),
    ])
    def test_strings(self, raw, expected):
        assert normalize_role(raw) == expected

    def test_user_payload(self):
        assert normalize_role({"user_role": "admin"}) == Role.ADMIN
        assert normalize_role({"userRole": "cashier"}) == Role.CASHIER
        assert normalize_role({"type": "owner"}) == Role.OWNER


class TestPermissions:
    def test_cashier_is_limited_to_today(self):
        perms = Permissions.for_role("cashier")
        assert not perms.can_edit_past_closures
        assert not perms.can_edit_past_sales
        assert not perms.can_cancel_line
        assert not perms.can_access_workspace

    def test_owner_can_work_on_past_days_but_not_cancel_lines(self):
        perms = Permissions.for_role("owner")
        assert perms.can_edit_past_closures
        assert perms.can_edit_past_sales
        assert perms.can_access_workspace
        assert not perms.can_cancel_line

    @pytest.mark.parametrize("role", ["admin", "manager"])
    def test_admin_and_manager_can_cancel_lines(self, role):
        perms = Permissions.for_role(role)
        assert perms.can_cancel_line
        assert perms.can_edit_past_closures

    def test_unknown_role_gets_nothing(self):
        perms = Permissions.for_role("")
        assert perms.role == Role.UNKNOWN
        assert not any([
            perms.can_edit_past_closures, perms.can_edit_past_sales,
            perms.can_cancel_line, perms.can_access_workspace,
        ])
