"""
Tests for the membership access policy.
"""

import pytest

from adwatch.services.monitoring.access import (
    Action,
    AllowAllPolicy,
    MembershipAccessPolicy,
    Principal,
)
from adwatch.services.monitoring.exceptions import AccessDeniedError

MEMBER = Principal(user_id="user-1", client_ids=["client-a"])
ADMIN = Principal(user_id="admin-1", is_admin=True)


class TestMembershipAccessPolicy:

    def setup_method(self):
        self.policy = MembershipAccessPolicy()

    def test_member_may_act_on_own_client(self):
        for action in Action:
            self.policy.authorize(MEMBER, action, "client-a")

    def test_member_denied_on_other_client(self):
        with pytest.raises(AccessDeniedError, match="client-b"):
            self.policy.authorize(MEMBER, Action.UPDATE_ALERT, "client-b")

    def test_member_may_read_across_own_clients(self):
        self.policy.authorize(MEMBER, Action.READ_ALERTS)

    def test_member_may_not_run_all_clients(self):
        with pytest.raises(AccessDeniedError, match="all clients"):
            self.policy.authorize(MEMBER, Action.RUN_MONITORING)

    def test_member_without_memberships_is_denied(self):
        with pytest.raises(AccessDeniedError):
            self.policy.authorize(Principal(user_id="user-2"), Action.READ_ALERTS)

    def test_admin_and_service_may_do_anything(self):
        self.policy.authorize(ADMIN, Action.RUN_MONITORING)
        self.policy.authorize(Principal.service(), Action.UPDATE_ALERT, "client-z")


class TestAllowAllPolicy:

    def test_anonymous_is_allowed(self):
        AllowAllPolicy().authorize(Principal(), Action.RUN_MONITORING)


class TestPrincipal:

    def test_service_principal(self):
        principal = Principal.service("cron")
        assert principal.user_id == "cron"
        assert principal.is_privileged
        assert not MEMBER.is_privileged
