# tests/conftest.py

import os
import sys
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# ============================================================
# Asegurar que el paquete taskboard/ está en el PATH
# ============================================================
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_taskboard.db"
os.environ.setdefault("TASKBOARD_DATABASE_URL", SQLALCHEMY_DATABASE_URL)

from taskboard.main import app  # noqa: E402
from taskboard.database import Base, get_db  # noqa: E402
from taskboard import crud, schemas  # noqa: E402


# ============================================================
# CONFIGURACIÓN DE BD (SQLite) PARA UNIT + API
# ============================================================

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine
)

Base.metadata.create_all(bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(autouse=True)
def clean_db():
    """Reinicia la BD antes de cada test para evitar contaminación."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def ana(db_session):
    return crud.create_profile(
        db_session, schemas.ProfileCreate(full_name="Ana", email="ana@example.com")
    )


@pytest.fixture
def luis(db_session):
    return crud.create_profile(
        db_session, schemas.ProfileCreate(full_name="Luis", email="luis@example.com", role="admin")
    )


@pytest.fixture
def task(db_session, ana):
    return crud.create_task(db_session, build_task_create(creator_id=ana.id))


# ============================================================
# HELPERS
# ============================================================

def build_task_create(
    creator_id,
    title="Test Task",
    description="Descripción de prueba",
    status="pending",
    priority="medium",
    due_date=None,
    **extra,
):
    return schemas.TaskCreate(
        title=title,
        description=description,
        status=status,
        priority=priority,
        due_date=due_date,
        creator_id=creator_id,
        **extra,
    )


class FakeClock:
    """Controllable replacement for ``database.utcnow``."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
