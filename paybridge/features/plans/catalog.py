"""
paybridge/features/plans/catalog.py

Plan catalog.

Handles:
- Plan lookup and listing (limits rendered for display)
- Default plan seeding
- Administrative plan updates, keeping the processor price in sync
"""

from typing import Any, Dict, List, Optional, Union

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from paybridge.core.database import plans, session_scope
from paybridge.core.errors import InvalidAmount, InvalidPlanId, PlanNotFound
from paybridge.core.logging import log_event
from paybridge.models.billing import LIMIT_RESOURCES, UNLIMITED, Plan, utc_now


# Default plan configurations (prices in cents)
DEFAULT_PLANS = {
    "free": {
        "name": "Free",
        "description": "For individuals getting started",
        "price": 0,
        "sort_order": 0,
        "limits": {"workspaces": 1, "sheets": 3, "members": 2, "viewers": 2, "tasks": 100},
    },
    "pro": {
        "name": "Pro",
        "description": "For growing teams",
        "price": 1000,
        "sort_order": 1,
        "limits": {"workspaces": 5, "sheets": 25, "members": 10, "viewers": 20, "tasks": 2000},
    },
    "business": {
        "name": "Business",
        "description": "For established companies",
        "price": 2000,
        "sort_order": 2,
        "limits": {"workspaces": 20, "sheets": 100, "members": 50, "viewers": 100, "tasks": UNLIMITED},
    },
    "enterprise": {
        "name": "Enterprise",
        "description": "No limits",
        "price": 5000,
        "sort_order": 3,
        "limits": {resource: UNLIMITED for resource in LIMIT_RESOURCES},
    },
}

_UPDATABLE_FIELDS = {"name", "description", "price", "sort_order", "is_active", "external_price_id", "external_product_id"} | {
    f"max_{resource}" for resource in LIMIT_RESOURCES
}


def _plan(row) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        description=row.description,
        price=row.price,
        currency=row.currency,
        max_workspaces=row.max_workspaces,
        max_sheets=row.max_sheets,
        max_members=row.max_members,
        max_viewers=row.max_viewers,
        max_tasks=row.max_tasks,
        sort_order=row.sort_order,
        external_product_id=row.external_product_id,
        external_price_id=row.external_price_id,
        is_active=bool(row.is_active),
    )


def render_limit(value: int) -> Union[int, str]:
    return "unlimited" if value < 0 else value


def render_plan(plan: Plan) -> Dict[str, Any]:
    """Plan as shown to customers: negative limits become 'unlimited'."""
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description,
        "price": plan.price,
        "currency": plan.currency,
        "limits": {resource: render_limit(plan.limit_for(resource)) for resource in LIMIT_RESOURCES},
    }


class PlanCatalog:
    """Read access to plans plus administrative maintenance."""

    def __init__(self, gateway=None):
        self.gateway = gateway

    def get_plan(self, plan_id: str, session: Optional[Session] = None) -> Plan:
        if not plan_id or not str(plan_id).strip():
            raise InvalidPlanId("plan_id is required")
        with session_scope(session) as s:
            row = s.execute(select(plans).where(plans.c.id == plan_id)).fetchone()
        if row is None:
            raise PlanNotFound(f"Plan {plan_id} not found")
        return _plan(row)

    def find_by_external_price_id(self, price_id: str, session: Optional[Session] = None) -> Optional[Plan]:
        with session_scope(session) as s:
            row = s.execute(select(plans).where(plans.c.external_price_id == price_id)).fetchone()
        return _plan(row) if row else None

    def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        query = select(plans).order_by(plans.c.sort_order, plans.c.price)
        if not include_inactive:
            query = query.where(plans.c.is_active.is_(True))
        with session_scope() as s:
            rows = s.execute(query).fetchall()
        return [_plan(row) for row in rows]

    def seed_default_plans(self) -> int:
        """Insert any missing default plans. Returns the number inserted."""
        inserted = 0
        with session_scope() as s:
            existing = {row.id for row in s.execute(select(plans.c.id)).fetchall()}
            for plan_id, config in DEFAULT_PLANS.items():
                if plan_id in existing:
                    continue
                values = {
                    "id": plan_id,
                    "name": config["name"],
                    "description": config["description"],
                    "price": config["price"],
                    "sort_order": config["sort_order"],
                    "is_active": True,
                }
                for resource, limit in config["limits"].items():
                    values[f"max_{resource}"] = limit
                s.execute(insert(plans).values(**values))
                inserted += 1
        return inserted

    def update_plan(self, plan_id: str, **changes) -> Plan:
        """Apply an administrative change.

        A price change on a plan with a processor product creates a new
        processor price, makes it the default and deactivates the old one.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidPlanId(f"Unknown plan fields: {', '.join(sorted(unknown))}")
        if "price" in changes and (changes["price"] is None or changes["price"] < 0):
            raise InvalidAmount("price must be a non-negative integer")

        current = self.get_plan(plan_id)
        price_changed = "price" in changes and changes["price"] != current.price
        if price_changed and self.gateway is not None and current.external_product_id:
            new_price_id = self.gateway.create_price(current.external_product_id, changes["price"], current.currency)
            if current.external_price_id:
                self.gateway.deactivate_price(current.external_price_id)
            changes["external_price_id"] = new_price_id

        with session_scope() as s:
            s.execute(update(plans).where(plans.c.id == plan_id).values(updated_at=utc_now(), **changes))
        log_event("info", "plan.updated", event_type="plan.updated", extra={"plan_id": plan_id, "fields": sorted(changes)})
        return self.get_plan(plan_id)
