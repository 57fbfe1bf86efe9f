"""
Pytest configuration and fixtures for the import pipeline tests.

Every test gets its own SQLite file database under ``tmp_path`` with the
full schema created and a small, two-tenant dataset seeded.
"""

import os

# The app's own startup bootstrap is never needed; fixtures create the schema.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from fastapi.testclient import TestClient

from app.db.models import Asset, Location, Organization, User
from app.db.session import build_session_factory, create_db_engine, get_db, init_db
from tests.utils.builders import ACME_ADMIN_ID, ACME_ID, GLOBEX_ADMIN_ID, GLOBEX_ID


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'imports.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def seeded(session_factory):
    """
    Two organizations with one admin each.

    Acme owns location "Plant A" and asset "Pump 1" (legacy id 101).
    Globex owns a location and an asset with the same names, so tenant
    scoping mistakes show up as wrong foreign keys.
    """
    with session_factory() as session:
        session.add_all([
            Organization(id=ACME_ID, name="Acme", slug="acme"),
            Organization(id=GLOBEX_ID, name="Globex", slug="globex"),
        ])
        session.flush()
        session.add_all([
            User(id=ACME_ADMIN_ID, email="admin@acme.test", name="Acme Admin", password="x",
                 role="ADMIN", organization_id=ACME_ID),
            User(id=GLOBEX_ADMIN_ID, email="admin@globex.test", name="Globex Admin", password="x",
                 role="ADMIN", organization_id=GLOBEX_ID),
        ])
        acme_plant = Location(name="Plant A", organization_id=ACME_ID)
        globex_plant = Location(name="Plant A", organization_id=GLOBEX_ID)
        session.add_all([acme_plant, globex_plant])
        session.flush()
        acme_pump = Asset(name="Pump 1", legacy_id=101, location_id=acme_plant.id, organization_id=ACME_ID)
        globex_pump = Asset(name="Pump 1", legacy_id=101, location_id=globex_plant.id, organization_id=GLOBEX_ID)
        session.add_all([acme_pump, globex_pump])
        session.commit()

        ids = {
            "acme_location_id": acme_plant.id,
            "globex_location_id": globex_plant.id,
            "acme_asset_id": acme_pump.id,
            "globex_asset_id": globex_pump.id,
        }
    return ids


@pytest.fixture
def client(session_factory, seeded):
    """TestClient wired to the per-test database."""
    from app.api.dependencies import get_session_factory
    from app.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

