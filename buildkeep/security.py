"""Principals, permissions and the permission-check boundary.

Policy storage is external to buildkeep. Core operations only ask a
PermissionChecker whether a principal may perform an action on a target
and receive the principal explicitly as a parameter.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    """Permissions checked by management operations."""

    READ = "read"
    BUILD = "build"
    CONFIGURE = "configure"
    DELETE = "delete"
    WIPEOUT = "wipeout"


@dataclass(frozen=True)
class Principal:
    """Identity on whose behalf an operation runs."""

    name: str
    anonymous: bool = False

    def __str__(self) -> str:
        return self.name


ANONYMOUS = Principal("anonymous", anonymous=True)
SYSTEM = Principal("SYSTEM")


class AuthorizationError(Exception):
    """Raised when a principal lacks a permission."""

    def __init__(
        self,
        principal: Principal,
        permission: Permission,
        target: str,
        code: str = "permission_denied",
    ) -> None:
        super().__init__(
            f"{principal} is missing the {permission.value} permission on {target}"
        )
        self.principal = principal
        self.permission = permission
        self.target = target
        self.code = code


class PermissionChecker(Protocol):
    """Yes/no permission check supplied by the hosting system."""

    def check_permission(
        self, principal: Principal, permission: Permission, target: str
    ) -> bool: ...


class PolicyAuthorizer:
    """Simple grant-table permission checker.

    Authenticated principals are allowed everything unless ``grants`` is
    given, in which case only the listed principal names hold each
    permission. Per-target grants in ``target_grants`` add to the global
    ones. Anonymous principals hold nothing unless ``anonymous_read`` is
    set or they are listed explicitly.
    """

    def __init__(
        self,
        grants: Mapping[Permission, Iterable[str]] | None = None,
        target_grants: Mapping[str, Mapping[Permission, Iterable[str]]] | None = None,
        admins: Iterable[str] = (),
        anonymous_read: bool = False,
    ) -> None:
        self._restricted = grants is not None
        self._grants = {p: set(names) for p, names in (grants or {}).items()}
        self._target_grants = {
            target: {p: set(names) for p, names in perms.items()}
            for target, perms in (target_grants or {}).items()
        }
        self._admins = set(admins)
        self._anonymous_read = anonymous_read

    def grant(
        self, permission: Permission, name: str, target: str | None = None
    ) -> None:
        """Add a grant for a principal name, optionally scoped to a target."""
        if target is None:
            self._restricted = True
            self._grants.setdefault(permission, set()).add(name)
        else:
            self._target_grants.setdefault(target, {}).setdefault(
                permission, set()
            ).add(name)

    def check_permission(
        self, principal: Principal, permission: Permission, target: str
    ) -> bool:
        if principal.name in self._admins:
            return True

        names = set(self._grants.get(permission, ()))
        names |= self._target_grants.get(target, {}).get(permission, set())
        if principal.name in names:
            return True

        if principal.anonymous:
            return permission is Permission.READ and self._anonymous_read
        return not self._restricted


def require_permission(
    checker: PermissionChecker,
    principal: Principal,
    permission: Permission,
    target: str,
) -> None:
    """Raise AuthorizationError unless the checker allows the action.

    Args:
        checker: Permission checker to consult.
        principal: Acting principal.
        permission: Permission required.
        target: Full name of the project the action applies to.

    Raises:
        AuthorizationError: If the permission is denied.
    """
    if not checker.check_permission(principal, permission, target):
        logger.warning(
            "Denied %s on %s for %s", permission.value, target, principal.name
        )
        raise AuthorizationError(principal, permission, target)


__all__ = [
    "ANONYMOUS",
    "SYSTEM",
    "AuthorizationError",
    "Permission",
    "PermissionChecker",
    "PolicyAuthorizer",
    "Principal",
    "require_permission",
]
