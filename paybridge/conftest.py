# paybridge/conftest.py
from datetime import datetime, timezone

import pytest
from sqlalchemy import insert, update

from paybridge.core.database import (
    companies,
    create_all_tables,
    dispose_engine,
    init_engine,
    plans,
    user_roles,
    users,
)
from paybridge.core.metrics import METRICS


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def db():
    """
    Fresh in-memory SQLite database for every test.

    StaticPool keeps the single connection alive, so every session in the
    test sees the same database.
    """
    engine = init_engine("sqlite://")
    create_all_tables()
    yield engine
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def seeded(db):
    """
    Default plans plus one company with an author, a member and a viewer.

    pro and business are linked to processor prices; free and enterprise
    are local only.
    """
    from paybridge.core.database import get_db_session
    from paybridge.features.plans.catalog import PlanCatalog

    PlanCatalog().seed_default_plans()
    with get_db_session() as session:
        for plan_id in ("pro", "business"):
            session.execute(
                update(plans)
                .where(plans.c.id == plan_id)
                .values(external_product_id=f"prod_{plan_id}", external_price_id=f"price_{plan_id}")
            )
        session.execute(insert(companies).values(id="co_acme", name="Acme"))
        session.execute(insert(companies).values(id="co_other", name="Other Co"))

        people = [
            ("user_author", "author@acme.test", "r_author", "co_acme", "AUTHOR"),
            ("user_member", "member@acme.test", "r_member", "co_acme", "MEMBER"),
            ("user_viewer", "viewer@acme.test", "r_viewer", "co_acme", "VIEWER"),
            ("user_other", "author@other.test", "r_other", "co_other", "AUTHOR"),
        ]
        for user_id, email, role_id, company_id, role_type in people:
            session.execute(insert(users).values(user_id=user_id, email=email, first_name=user_id.split("_")[1].title()))
        # Roles reference users, so insert them second
        for user_id, _, role_id, company_id, role_type in people:
            session.execute(
                insert(user_roles).values(id=role_id, user_id=user_id, company_id=company_id, role_type=role_type)
            )
            session.execute(update(users).where(users.c.user_id == user_id).values(selected_role_id=role_id))

        # A user without any selected role
        session.execute(insert(users).values(user_id="user_nobody", email="nobody@acme.test"))
    yield


@pytest.fixture
def gateway():
    from paybridge.tests.mocks import FakeGateway
    return FakeGateway()


@pytest.fixture
def orchestrator(seeded, gateway):
    from paybridge.features.billing.orchestrator import PaymentOrchestrator
    return PaymentOrchestrator(gateway)
