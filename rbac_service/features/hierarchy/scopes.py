"""
Scope types, their privilege ranking, and the acting-user context.
"""
import enum
from dataclasses import dataclass
from typing import Optional


class ScopeType(str, enum.Enum):
    """Levels of the organizational hierarchy."""
    ORGANIZATION = "ORGANIZATION"
    CLIENT = "CLIENT"
    COMPANY = "COMPANY"
    DEPARTMENT = "DEPARTMENT"
    TEAM = "TEAM"
    VENDOR = "VENDOR"
    VENDOR_COMPANY = "VENDOR_COMPANY"
    VENDOR_DEPARTMENT = "VENDOR_DEPARTMENT"
    VENDOR_TEAM = "VENDOR_TEAM"


# Higher number = higher privilege. Vendor levels rank equal to their mainline counterpart.
SCOPE_RANK: dict[ScopeType, int] = {
    ScopeType.ORGANIZATION: 5,
    ScopeType.CLIENT: 4,
    ScopeType.COMPANY: 3,
    ScopeType.DEPARTMENT: 2,
    ScopeType.TEAM: 1,
    ScopeType.VENDOR: 4,
    ScopeType.VENDOR_COMPANY: 3,
    ScopeType.VENDOR_DEPARTMENT: 2,
    ScopeType.VENDOR_TEAM: 1,
}


def scope_rank(scope_type: ScopeType | str) -> int:
    return SCOPE_RANK[ScopeType(scope_type)]


@dataclass(frozen=True)
class Scope:
    """One node of the hierarchy: a (type, id) pair."""
    scope_type: ScopeType
    scope_id: str

    def __post_init__(self):
        # Accept plain strings from callers and normalize to the enum
        object.__setattr__(self, "scope_type", ScopeType(self.scope_type))

    @property
    def is_root(self) -> bool:
        return self.scope_type == ScopeType.ORGANIZATION

    def __str__(self) -> str:
        return f"{self.scope_type.value}:{self.scope_id}"


@dataclass(frozen=True)
class ScopeContext:
    """Ids of the enclosing hierarchy levels of a scope."""
    organization_id: Optional[str] = None
    client_id: Optional[str] = None
    company_id: Optional[str] = None
    department_id: Optional[str] = None


@dataclass(frozen=True)
class Actor:
    """
    The user performing an operation, positioned at their home scope.

    The core never authenticates; the transport builds this from verified
    token claims.
    """
    user_id: str
    scope_type: ScopeType
    scope_id: str
    organization_id: Optional[str] = None
    client_id: Optional[str] = None
    company_id: Optional[str] = None
    department_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "scope_type", ScopeType(self.scope_type))

    @property
    def scope(self) -> Scope:
        return Scope(self.scope_type, self.scope_id)

    @property
    def rank(self) -> int:
        return SCOPE_RANK[self.scope_type]

    def with_context(self, context: ScopeContext) -> "Actor":
        """Fill ids the token did not carry from the resolved hierarchy context."""
        return Actor(
            user_id=self.user_id,
            scope_type=self.scope_type,
            scope_id=self.scope_id,
            organization_id=self.organization_id or context.organization_id,
            client_id=self.client_id or context.client_id,
            company_id=self.company_id or context.company_id,
            department_id=self.department_id or context.department_id,
        )
