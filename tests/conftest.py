"""
Shared pytest fixtures for the Refinery Batch Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - templates: default station / check catalog
    - linear_flow: active gold flow receiving → casting → shipping
    - operator / supervisor: CurrentUser identities
"""

import pytest

from refinery import create_app
from refinery.auth import CurrentUser
from refinery.models import db as _db
from refinery.services import flow_service
from refinery.services.template_catalog import seed_default_templates


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identities ───────────────────────────────────────────────────────────


@pytest.fixture()
def operator():
    return CurrentUser(id="op-1", name="Olga Operator", role="operator")


@pytest.fixture()
def supervisor():
    return CurrentUser(id="sup-1", name="Sam Supervisor", role="supervisor")


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def templates():
    """Seed the default template catalog."""
    return seed_default_templates()


def make_linear_flow(node_specs, pipeline="gold", version="1.0", activate=True, name=None):
    """Create a flow whose nodes are chained in list order.

    ``node_specs`` is a list of ``(node_id, node_type, template_id)``.
    """
    nodes = [
        {"id": key, "type": node_type, "template_id": template_id}
        for key, node_type, template_id in node_specs
    ]
    edges = [
        {"id": f"e{i}", "source": a[0], "target": b[0]}
        for i, (a, b) in enumerate(zip(node_specs, node_specs[1:]))
    ]
    flow = flow_service.create_flow({
        "name": name or f"{pipeline} flow {version}",
        "version": version,
        "pipeline": pipeline,
        "nodes": nodes,
        "edges": edges,
    })
    if activate:
        flow = flow_service.activate_flow(flow.id)
    return flow


SCENARIO_NODES = [
    ("receiving", "station", "station_receiving"),
    ("casting", "station", "station_casting"),
    ("shipping", "station", "station_packaging"),
]

ANALYTICS_NODES = [
    ("receiving", "station", "station_receiving"),
    ("weigh_in", "check", "check_weigh_in"),
    ("assay", "station", "station_assay"),
    ("casting", "station", "station_casting"),
    ("recovery", "station", "station_recovery"),
    ("shipping", "station", "station_packaging"),
]


@pytest.fixture()
def linear_flow(templates):
    """Active gold flow: receiving → casting → shipping."""
    return make_linear_flow(SCENARIO_NODES)


@pytest.fixture()
def analytics_flow(templates):
    """Active gold flow that exercises every analytics role."""
    return make_linear_flow(ANALYTICS_NODES, version="2.0")


@pytest.fixture()
def flow_factory(templates):
    """Return ``make_linear_flow`` with the template catalog seeded."""
    return make_linear_flow
