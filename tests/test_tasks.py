# tests/test_tasks.py

import shutil
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import build_task_create
from taskboard import crud, models, schemas
from taskboard.database import Base, get_db
from taskboard.errors import NotFoundError, StoreError, ValidationError
from taskboard.main import app


# ============================================================
# 1. PRUEBAS UNITARIAS (CRUD directo)
# ============================================================

def test_create_task_crud(db_session, ana):
    task = crud.create_task(db_session, build_task_create(creator_id=ana.id))
    assert task.id is not None
    assert task.title == "Test Task"
    assert task.status == "pending"
    assert task.origin == "manual"
    assert task.total_minutes == 0
    assert task.creator.full_name == "Ana"


def test_create_task_from_whatsapp_message(db_session, ana, luis):
    task = crud.create_task(
        db_session,
        build_task_create(
            creator_id=ana.id,
            description="Revisar pedido",
            responsible_id=luis.id,
            whatsapp_message="¿Podéis revisar el pedido 42?",
            whatsapp_chat_name="Equipo",
            tags=["pedidos"],
        ),
    )
    assert task.origin == "whatsapp_message"
    assert task.description == "Revisar pedido\n\n--- Mensaje de WhatsApp ---\n¿Podéis revisar el pedido 42?"
    assert task.responsible.full_name == "Luis"
    assert task.tags == ["pedidos"]


def test_create_task_unknown_creator(db_session):
    with pytest.raises(NotFoundError):
        crud.create_task(db_session, build_task_create(creator_id=999))


def test_create_poll_tasks_skips_blank_options(db_session, ana):
    tasks = crud.create_poll_tasks(
        db_session,
        schemas.PollTaskCreate(
            poll_title="¿Qué hacemos esta semana?",
            poll_options="Inventario\n\n  Limpieza  \nPedidos\n",
            creator_id=ana.id,
            priority="high",
        ),
    )
    assert [t.title for t in tasks] == ["Inventario", "Limpieza", "Pedidos"]
    assert all(t.origin == "whatsapp_poll" for t in tasks)
    assert all(t.priority == "high" for t in tasks)
    assert tasks[0].description == 'Tarea creada desde encuesta de WhatsApp: "¿Qué hacemos esta semana?"'


def test_create_poll_tasks_without_options(db_session, ana):
    with pytest.raises(ValidationError) as exc:
        crud.create_poll_tasks(
            db_session,
            schemas.PollTaskCreate(poll_title="Vacía", poll_options=" \n ", creator_id=ana.id),
        )
    assert exc.value.message == "Debes agregar al menos una opción"


def test_get_task_crud(db_session, ana):
    created = crud.create_task(db_session, build_task_create(creator_id=ana.id, title="Buscarme"))
    fetched = crud.get_task(db_session, created.id)
    assert fetched is not None
    assert fetched.title == "Buscarme"


def test_require_task_missing(db_session):
    with pytest.raises(NotFoundError) as exc:
        crud.require_task(db_session, 12345)
    assert exc.value.message == "Tarea no encontrada"


def test_update_task_crud(db_session, task, luis):
    updated = crud.update_task(
        db_session,
        task,
        schemas.TaskUpdate(title="Actualizada", priority="high", responsible_id=luis.id),
    )
    assert updated.title == "Actualizada"
    assert updated.priority == "high"
    assert updated.responsible_id == luis.id


def test_status_completed_sets_and_clears_completed_at(db_session, task):
    done = crud.update_task_status(db_session, task, models.TaskStatus.COMPLETED)
    assert done.status == "completed"
    assert done.completed_at is not None

    reopened = crud.update_task_status(db_session, done, models.TaskStatus.PENDING)
    assert reopened.status == "pending"
    assert reopened.completed_at is None


def test_board_groups_by_status(db_session, ana):
    for title, status in [("A", "pending"), ("B", "blocked"), ("C", "pending"), ("D", "completed")]:
        crud.create_task(db_session, build_task_create(creator_id=ana.id, title=title, status=status))

    board = crud.get_board(db_session)
    assert {t.title for t in board["pending"]} == {"A", "C"}
    assert [t.title for t in board["blocked"]] == ["B"]
    assert [t.title for t in board["completed"]] == ["D"]
    assert board["in_progress"] == []


def test_get_tasks_by_status_and_overdue(db_session, ana):
    overdue = crud.create_task(
        db_session,
        build_task_create(
            creator_id=ana.id,
            title="Vencida",
            status="in_progress",
            due_date=datetime.utcnow() - timedelta(days=1),
        ),
    )
    future = crud.create_task(
        db_session,
        build_task_create(
            creator_id=ana.id,
            title="Futura",
            status="pending",
            due_date=datetime.utcnow() + timedelta(days=1),
        ),
    )
    done = crud.create_task(
        db_session,
        build_task_create(
            creator_id=ana.id,
            title="Hecha",
            status="completed",
            due_date=datetime.utcnow() - timedelta(days=1),
        ),
    )

    pending = crud.get_tasks_by_status(db_session, "pending")
    assert pending[0].id == future.id

    overdue_ids = {t.id for t in crud.get_overdue_tasks(db_session)}
    assert overdue.id in overdue_ids
    assert done.id not in overdue_ids


def test_delete_task_cascades(db_session, task, ana):
    crud.add_checklist_item(db_session, task.id, schemas.ChecklistItemCreate(text="Paso 1"))
    crud.create_comment(db_session, task.id, schemas.CommentCreate(author_id=ana.id, text="Hola"))
    crud.create_manual_entry(
        db_session, task.id,
        schemas.ManualTimeEntryCreate(user_id=ana.id, start_time=datetime(2025, 3, 10, 9), duration_minutes=30),
    )

    crud.delete_task(db_session, task)

    assert db_session.query(models.Task).count() == 0
    assert db_session.query(models.ChecklistItem).count() == 0
    assert db_session.query(models.Comment).count() == 0
    assert db_session.query(models.TimeEntry).count() == 0


def test_checklist_positions(db_session, task):
    first = crud.add_checklist_item(db_session, task.id, schemas.ChecklistItemCreate(text="Uno"))
    second = crud.add_checklist_item(db_session, task.id, schemas.ChecklistItemCreate(text="Dos"))
    third = crud.add_checklist_item(db_session, task.id, schemas.ChecklistItemCreate(text="  Tres "))
    assert [first.position, second.position, third.position] == [0, 1, 2]
    assert third.text == "Tres"

    crud.delete_checklist_item(db_session, second)
    fourth = crud.add_checklist_item(db_session, task.id, schemas.ChecklistItemCreate(text="Cuatro"))
    assert fourth.position == 3

    toggled = crud.set_checklist_item_done(db_session, first, True)
    assert toggled.done is True
    assert [i.text for i in crud.get_checklist(db_session, task.id)] == ["Uno", "Tres", "Cuatro"]


def test_comments_ordered_and_trimmed(db_session, task, ana, luis):
    crud.create_comment(db_session, task.id, schemas.CommentCreate(author_id=ana.id, text=" primero "))
    crud.create_comment(db_session, task.id, schemas.CommentCreate(author_id=luis.id, text="segundo"))

    comments = crud.get_comments(db_session, task.id)
    assert [c.text for c in comments] == ["primero", "segundo"]
    assert comments[1].author.full_name == "Luis"

    with pytest.raises(ValidationError):
        crud.create_comment(db_session, task.id, schemas.CommentCreate(author_id=ana.id, text="   "))


def test_duplicate_email_is_store_error(db_session, ana):
    with pytest.raises(StoreError) as exc:
        crud.create_profile(db_session, schemas.ProfileCreate(full_name="Otra Ana", email="ana@example.com"))
    assert exc.value.message == "Error al crear el usuario"


def test_active_profiles_sorted(db_session, luis, ana):
    crud.create_profile(
        db_session, schemas.ProfileCreate(full_name="Zoe", email="zoe@example.com", active=False)
    )
    assert [p.full_name for p in crud.get_active_profiles(db_session)] == ["Ana", "Luis"]


# ============================================================
# 2. PRUEBAS API (TestClient)
# ============================================================

def _create_task_api(client, creator_id, **overrides):
    payload = {
        "title": "Task API",
        "description": "Desde API",
        "status": "pending",
        "priority": "low",
        "due_date": None,
        "creator_id": creator_id,
    }
    payload.update(overrides)
    return client.post("/tasks", json=payload)


def test_create_and_list_tasks_api(client, ana):
    resp = _create_task_api(client, ana.id)
    assert resp.status_code == 201
    assert resp.json()["creator"] == {"id": ana.id, "full_name": "Ana"}

    resp_list = client.get("/tasks")
    assert resp_list.status_code == 200
    assert len(resp_list.json()) == 1


def test_create_task_validation_api(client, ana):
    assert _create_task_api(client, ana.id, title="").status_code == 422
    assert _create_task_api(client, ana.id, status="done").status_code == 422
    assert _create_task_api(client, ana.id, priority="urgent").status_code == 422


def test_update_and_delete_api(client, ana):
    uid = _create_task_api(client, ana.id, title="Original").json()["id"]

    upd = client.put(f"/tasks/{uid}", json={"title": "Actualizada API", "priority": "high"})
    assert upd.status_code == 200
    assert upd.json()["title"] == "Actualizada API"
    assert upd.json()["priority"] == "high"

    del_res = client.delete(f"/tasks/{uid}")
    assert del_res.status_code == 204

    res_404 = client.get(f"/tasks/{uid}")
    assert res_404.status_code == 404
    assert res_404.json() == {"detail": "Tarea no encontrada"}


@pytest.mark.parametrize("payload", [
    {"title": None},
    {"priority": None},
    {"title": "   "},
])
def test_update_rejects_null_or_blank_required_fields_api(client, ana, payload):
    uid = _create_task_api(client, ana.id, title="Original").json()["id"]

    resp = client.put(f"/tasks/{uid}", json=payload)
    assert resp.status_code == 422

    unchanged = client.get(f"/tasks/{uid}").json()
    assert (unchanged["title"], unchanged["priority"]) == ("Original", "low")


def test_update_clears_nullable_fields_and_strips_title_api(client, ana, luis):
    uid = _create_task_api(client, ana.id, title="Original", responsible_id=luis.id).json()["id"]

    upd = client.put(f"/tasks/{uid}", json={"title": "  Nueva  ", "responsible_id": None, "description": None})
    assert upd.status_code == 200
    assert upd.json()["title"] == "Nueva"
    assert upd.json()["responsible"] is None
    assert upd.json()["description"] is None


def test_status_change_api(client, ana):
    uid = _create_task_api(client, ana.id).json()["id"]

    complete = client.patch(f"/tasks/{uid}/status", json={"status": "completed"})
    assert complete.status_code == 200
    assert complete.json()["status"] == "completed"
    assert complete.json()["completed_at"] is not None

    back = client.patch(f"/tasks/{uid}/status", json={"status": "blocked"})
    assert back.json()["status"] == "blocked"
    assert back.json()["completed_at"] is None

    assert client.patch(f"/tasks/{uid}/status", json={"status": "done"}).status_code == 422


def test_board_and_status_filters_api(client, ana):
    overdue_date = (datetime.utcnow() - timedelta(days=1)).isoformat() + "Z"
    future_date = (datetime.utcnow() + timedelta(days=1)).isoformat() + "Z"

    _create_task_api(client, ana.id, title="Overdue API", status="in_progress", due_date=overdue_date)
    _create_task_api(client, ana.id, title="Futura API", status="pending", due_date=future_date)

    pending_res = client.get("/tasks/status/pending")
    assert pending_res.status_code == 200
    assert pending_res.json()[0]["title"] == "Futura API"

    overdue_res = client.get("/tasks/overdue")
    assert overdue_res.status_code == 200
    assert [t["title"] for t in overdue_res.json()] == ["Overdue API"]

    board = client.get("/tasks/board").json()
    assert [t["title"] for t in board["in_progress"]] == ["Overdue API"]
    assert [t["title"] for t in board["pending"]] == ["Futura API"]

    assert client.get("/tasks/status/archived").status_code == 422


def test_poll_api(client, ana):
    resp = client.post("/tasks/poll", json={
        "poll_title": "Turnos",
        "poll_options": "Mañana\nTarde",
        "creator_id": ana.id,
    })
    assert resp.status_code == 201
    assert [t["title"] for t in resp.json()] == ["Mañana", "Tarde"]

    empty = client.post("/tasks/poll", json={"poll_title": "Nada", "poll_options": "", "creator_id": ana.id})
    assert empty.status_code == 422
    assert empty.json()["detail"] == "Debes agregar al menos una opción"


def test_checklist_api(client, task):
    first = client.post(f"/tasks/{task.id}/checklist", json={"text": "Preparar"}).json()
    client.post(f"/tasks/{task.id}/checklist", json={"text": "Enviar"})

    toggled = client.patch(f"/checklist/{first['id']}", json={"done": True})
    assert toggled.status_code == 200
    assert toggled.json()["done"] is True

    items = client.get(f"/tasks/{task.id}/checklist").json()
    assert [(i["text"], i["position"]) for i in items] == [("Preparar", 0), ("Enviar", 1)]

    assert client.delete(f"/checklist/{first['id']}").status_code == 204
    assert client.delete(f"/checklist/{first['id']}").status_code == 404


def test_comments_api(client, task, ana):
    created = client.post(f"/tasks/{task.id}/comments", json={"author_id": ana.id, "text": "Listo"})
    assert created.status_code == 201
    assert created.json()["author"]["full_name"] == "Ana"

    listed = client.get(f"/tasks/{task.id}/comments").json()
    assert [c["text"] for c in listed] == ["Listo"]

    assert client.delete(f"/comments/{created.json()['id']}").status_code == 204
    assert client.get(f"/tasks/{task.id}/comments").json() == []


def test_profiles_api(client):
    resp = client.post("/profiles", json={"full_name": "Marta", "email": "marta@example.com"})
    assert resp.status_code == 201
    assert resp.json()["role"] == "user"

    assert client.post("/profiles", json={"full_name": "Mal", "email": "no-es-email"}).status_code == 422
    assert [p["full_name"] for p in client.get("/profiles").json()] == ["Marta"]


# ============================================================
# 3. TEST DE INTEGRACIÓN (Docker/TestContainers)
# ============================================================

@pytest.mark.integration
def test_integration_with_postgres_testcontainer():
    """Se salta automáticamente si Docker no está disponible."""
    if shutil.which("docker") is None:
        pytest.skip("Docker no instalado, se omite test de integración.")

    try:
        from testcontainers.postgres import PostgresContainer
    except ImportError:
        pytest.skip("testcontainers no instalado.")

    try:
        container = PostgresContainer("postgres:16-alpine")
    except Exception:
        pytest.skip("Docker no está corriendo, skip.")

    with container as postgres:
        engine_pg = create_engine(postgres.get_connection_url(), future=True)
        TestingSessionPG = sessionmaker(autocommit=False, autoflush=False, bind=engine_pg)

        Base.metadata.create_all(bind=engine_pg)

        def override_pg():
            db = TestingSessionPG()
            try:
                yield db
            finally:
                db.close()

        old = app.dependency_overrides.get(get_db)
        app.dependency_overrides[get_db] = override_pg
        try:
            client_pg = TestClient(app)

            user = client_pg.post("/profiles", json={"full_name": "Pg", "email": "pg@example.com"}).json()
            task = client_pg.post("/tasks", json={"title": "Desde Postgres", "creator_id": user["id"]}).json()

            started = client_pg.post(f"/tasks/{task['id']}/timer/start", json={"user_id": user["id"]})
            assert started.status_code == 201

            again = client_pg.post(f"/tasks/{task['id']}/timer/start", json={"user_id": user["id"]})
            assert again.status_code == 409
        finally:
            app.dependency_overrides[get_db] = old
