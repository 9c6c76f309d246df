"""
Fixtures compartidas de los tests del motor de puntos.

Cada test tiene su propia BD SQLite en memoria, recién creada y con el
catálogo de insignias sembrado.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LEDGER_AUDIT_ENABLED"] = "false"
os.environ["VERIFICATION_ORACLE"] = "random"

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import models  # noqa: F401  (registra las tablas)
import verification
from achievements import seed_badges
from auth import create_access_token, create_service_token
from database import Base, engine, SessionLocal, get_db
from lifecycle import create_pickup, transition_pickup, on_pickup_created, on_pickup_status_changed
from models import Profile
from verification import FixedVerificationOracle

NOW = datetime(2026, 10, 19, 12, 0, 0)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    seed_badges(session)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_profile(db):
    """Crea perfiles: make_profile(role="collector", green_points=10)"""
    counter = {"n": 0}

    def factory(role="household", **fields):
        counter["n"] += 1
        profile = Profile(
            full_name=fields.pop("full_name", f"{role.title()} {counter['n']}"),
            email=fields.pop("email", f"{role}{counter['n']}@example.com"),
            role=role,
            **fields,
        )
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile

    return factory


@pytest.fixture
def household(make_profile):
    return make_profile("household")


@pytest.fixture
def collector(make_profile):
    return make_profile("collector")


@pytest.fixture
def admin(make_profile):
    return make_profile("admin")


@pytest.fixture
def submit_pickup(db):
    """Crea un pickup y dispara on_pickup_created con una confianza fija"""
    def submit(user, category="plastic", estimated_weight=5.0, confidence=0.8):
        pickup = create_pickup(db, user.id, category, estimated_weight)
        db.commit()
        result = on_pickup_created(db, {"id": pickup.id}, FixedVerificationOracle(confidence))
        return pickup, result

    return submit


@pytest.fixture
def complete_pickup(db):
    """Lleva un pickup de pending a completed y dispara el handler de estado"""
    def complete(pickup, collector, actual_weight, now=NOW):
        transition_pickup(db, pickup.id, "assigned", collector_id=collector.id, now=now)
        transition_pickup(db, pickup.id, "in_progress", now=now)
        transition_pickup(db, pickup.id, "collected", actual_weight=actual_weight, now=now)
        transition_pickup(db, pickup.id, "processed", now=now)
        new_record, old_record = transition_pickup(db, pickup.id, "completed", now=now)
        db.commit()
        return on_pickup_status_changed(db, new_record, old_record, now=now)

    return complete


@pytest.fixture
def client(db, monkeypatch):
    from main import app

    monkeypatch.setattr(verification, "default_oracle", FixedVerificationOracle(0.8))

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_header(profile) -> dict:
    return {"Authorization": f"Bearer {create_access_token(profile.id, profile.role)}"}


def service_header() -> dict:
    return {"Authorization": f"Bearer {create_service_token()}"}


@pytest.fixture
def headers():
    """headers(profile) → Authorization de usuario; headers() → service_role"""
    def build(profile=None):
        return auth_header(profile) if profile is not None else service_header()

    return build
