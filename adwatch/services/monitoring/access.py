"""Access policy for the monitoring entry points.

Every entry point calls `policy.authorize(principal, action, client_id)`
before doing any work; the policy raises AccessDeniedError on refusal.
How principals and memberships are established is up to the caller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .exceptions import AccessDeniedError

logger = logging.getLogger(__name__)


class Action(str, Enum):
    RUN_MONITORING = "run_monitoring"
    READ_ALERTS = "read_alerts"
    UPDATE_ALERT = "update_alert"
    READ_SIGNALS = "read_signals"
    ACKNOWLEDGE_SIGNAL = "acknowledge_signal"


class Principal(BaseModel):
    """Who is acting: a user with client memberships, an admin, or a service (cron)."""

    user_id: Optional[str] = None
    is_admin: bool = False
    is_service: bool = False
    client_ids: List[str] = Field(default_factory=list)

    @property
    def is_privileged(self) -> bool:
        return self.is_admin or self.is_service

    @classmethod
    def service(cls, name: str = "scheduler") -> "Principal":
        return cls(user_id=name, is_service=True)


class AccessPolicy(ABC):

    @abstractmethod
    def authorize(self, principal: Principal, action: Action, client_id: Optional[str] = None) -> None:
        """Raise AccessDeniedError unless the principal may perform the action."""


class AllowAllPolicy(AccessPolicy):
    """Permits everything. For local tools where the operator owns the data."""

    def authorize(self, principal: Principal, action: Action, client_id: Optional[str] = None) -> None:
        return None


class MembershipAccessPolicy(AccessPolicy):
    """Admins and services may do anything; members act only on their own clients.

    Client-less requests (e.g. "run all clients") are reserved for
    privileged principals.
    """

    def authorize(self, principal: Principal, action: Action, client_id: Optional[str] = None) -> None:
        if principal.is_privileged:
            return

        if client_id is None:
            if action in (Action.READ_ALERTS, Action.READ_SIGNALS) and principal.client_ids:
                return
            self._deny(principal, action, client_id)

        if client_id not in principal.client_ids:
            self._deny(principal, action, client_id)

    @staticmethod
    def _deny(principal: Principal, action: Action, client_id: Optional[str]) -> None:
        scope = f"client {client_id}" if client_id else "all clients"
        logger.warning(f"Access denied: {principal.user_id or 'anonymous'} -> {action.value} on {scope}")
        raise AccessDeniedError(f"Not allowed to {action.value.replace('_', ' ')} for {scope}")
