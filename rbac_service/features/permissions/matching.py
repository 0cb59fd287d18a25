"""
Permission code format and wildcard matching.

Codes take the form resource:action. Two wildcard forms are recognised:
resource:* covers every action on a resource, and * covers everything.
"""
import re
from typing import AbstractSet, Iterable

SUPER_ADMIN_CODE = "*"

PERMISSION_CODE_PATTERN = re.compile(r"^[a-z0-9_.-]+:[a-z0-9_.-]+$")
_RESOURCE_WILDCARD_PATTERN = re.compile(r"^[a-z0-9_.-]+:\*$")


def is_valid_permission_code(code: str) -> bool:
    """True for resource:action, resource:* and *."""
    return (
        code == SUPER_ADMIN_CODE
        or bool(PERMISSION_CODE_PATTERN.match(code))
        or bool(_RESOURCE_WILDCARD_PATTERN.match(code))
    )


def permission_category(code: str) -> str:
    """Resource part of a code, used as the default catalog category."""
    if code == SUPER_ADMIN_CODE:
        return "system"
    return code.split(":", 1)[0]


def permission_matches(held: str, required: str) -> bool:
    """
    Check whether a held code covers a required code.

    Examples:
        permission_matches("orders:read", "orders:read") -> True
        permission_matches("orders:*", "orders:refund") -> True
        permission_matches("*", "billing:manage") -> True
        permission_matches("orders:*", "customers:read") -> False
    """
    if held == required or held == SUPER_ADMIN_CODE:
        return True
    if held.endswith(":*"):
        return required.startswith(held[:-1])
    return False


def has_permission(
    held: Iterable[str],
    required: str,
    denied: AbstractSet[str] = frozenset(),
) -> bool:
    """
    True if any held code covers the required one.

    A required code covered by a denied code is refused regardless of
    what is held.
    """
    if any(permission_matches(code, required) for code in denied):
        return False
    return any(permission_matches(code, required) for code in held)


def has_all_permissions(
    held: Iterable[str],
    required: Iterable[str],
    denied: AbstractSet[str] = frozenset(),
) -> bool:
    held = list(held)
    return all(has_permission(held, code, denied) for code in required)


def has_any_permission(
    held: Iterable[str],
    required: Iterable[str],
    denied: AbstractSet[str] = frozenset(),
) -> bool:
    held = list(held)
    return any(has_permission(held, code, denied) for code in required)
