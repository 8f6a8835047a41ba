"""
Account collaborators used by billing.

Users, roles and resource usage belong to other services. Billing reads
them through these protocols; the Database* classes are the defaults and
read the shared tables directly.
"""
from typing import Dict, Optional, Protocol

from sqlalchemy import and_, func, select

from paybridge.core.database import company_usage, session_scope, user_roles, users
from paybridge.models.billing import Role, RoleType, User


class AccountDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_selected_role(self, user_id: str) -> Optional[Role]:
        """The role the user is currently acting as, or None."""
        ...


class UsageSource(Protocol):
    def get_usage(self, company_id: str) -> Dict[str, int]:
        """Counts per resource: workspaces, sheets, members, viewers, tasks."""
        ...


class DatabaseAccountDirectory:
    def get_user(self, user_id: str) -> Optional[User]:
        with session_scope() as session:
            row = session.execute(select(users).where(users.c.user_id == user_id)).fetchone()
        if row is None:
            return None
        return User(
            user_id=row.user_id,
            email=row.email,
            first_name=row.first_name,
            last_name=row.last_name,
        )

    def get_user_selected_role(self, user_id: str) -> Optional[Role]:
        with session_scope() as session:
            row = session.execute(
                select(user_roles)
                .select_from(users.join(user_roles, users.c.selected_role_id == user_roles.c.id))
                .where(users.c.user_id == user_id)
            ).fetchone()
        if row is None:
            return None
        return Role(type=RoleType(row.role_type), company_id=row.company_id, access=row.access)


class DatabaseUsageSource:
    """Members and viewers are counted from roles, the rest from company_usage."""

    def get_usage(self, company_id: str) -> Dict[str, int]:
        usage = {"workspaces": 0, "sheets": 0, "members": 0, "viewers": 0, "tasks": 0}
        with session_scope() as session:
            for row in session.execute(
                select(company_usage.c.resource, company_usage.c.used).where(company_usage.c.company_id == company_id)
            ).fetchall():
                if row.resource in usage:
                    usage[row.resource] = row.used
            for role_type, key in ((RoleType.MEMBER, "members"), (RoleType.VIEWER, "viewers")):
                usage[key] = session.execute(
                    select(func.count()).select_from(user_roles).where(
                        and_(user_roles.c.company_id == company_id, user_roles.c.role_type == role_type.value)
                    )
                ).scalar_one()
        return usage
