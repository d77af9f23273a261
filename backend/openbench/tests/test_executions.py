import uuid

import pytest

from conftest import TestingSessionLocal
from openbench import models
from openbench.errors import NotFound
from openbench.services import executions as execution_service


def _notifications(user_id, type_):
    db = TestingSessionLocal()
    try:
        return (
            db.query(models.Notification)
            .filter(models.Notification.user_id == user_id, models.Notification.type == type_)
            .all()
        )
    finally:
        db.close()


def test_start_and_cancel_toggles_lock(client, make_user, design_factory):
    author_id, author = make_user()
    _, runner = make_user()
    design = design_factory(author, publish=True)
    design_id = design["id"]

    resp = client.post(f"/api/designs/{design_id}/executions", headers=runner)
    assert resp.status_code == 201
    execution = resp.json()
    assert execution["status"] == "in_progress"
    assert execution["design_version"] == 1

    locked = client.get(f"/api/designs/{design_id}").json()
    assert locked["execution_count"] == 1
    assert locked["status"] == "locked"
    assert locked["is_public"] is True
    assert len(_notifications(author_id, "experiment_started")) == 1

    resp = client.patch(
        f"/api/designs/{design_id}",
        json={"hypothesis": "Changed after the run began"},
        headers=author,
    )
    assert resp.status_code == 403
    assert "Cannot change: hypothesis" in resp.json()["detail"]

    resp = client.delete(f"/api/executions/{execution['id']}", headers=runner)
    assert resp.status_code == 200
    assert resp.json()["design_status"] == "published"

    unlocked = client.get(f"/api/designs/{design_id}").json()
    assert unlocked["execution_count"] == 0
    assert unlocked["status"] == "published"
    assert client.get(f"/api/executions/{execution['id']}", headers=runner).status_code == 404


def test_lock_holds_until_last_execution_is_cancelled(client, make_user, design_factory):
    _, author = make_user()
    _, runner_a = make_user()
    _, runner_b = make_user()
    design = design_factory(author, publish=True)
    design_id = design["id"]

    first = client.post(f"/api/designs/{design_id}/executions", headers=runner_a).json()
    second = client.post(f"/api/designs/{design_id}/executions", headers=runner_b).json()
    assert client.get(f"/api/designs/{design_id}").json()["execution_count"] == 2

    client.delete(f"/api/executions/{first['id']}", headers=runner_a)
    data = client.get(f"/api/designs/{design_id}").json()
    assert data["execution_count"] == 1
    assert data["status"] == "locked"

    client.delete(f"/api/executions/{second['id']}", headers=runner_b)
    data = client.get(f"/api/designs/{design_id}").json()
    assert data["execution_count"] == 0
    assert data["status"] == "published"


def test_non_methodology_edits_allowed_while_locked(client, make_user, design_factory):
    _, author = make_user()
    design = design_factory(author, publish=True)
    client.post(f"/api/designs/{design['id']}/executions", headers=author)

    resp = client.patch(f"/api/designs/{design['id']}", json={"summary": "clarified"}, headers=author)
    assert resp.status_code == 200
    assert resp.json()["has_draft_changes"] is True
    assert resp.json()["status"] == "locked"


def test_cannot_execute_draft_or_design_with_pending_draft(client, make_user, design_factory):
    _, author = make_user()
    _, runner = make_user()
    draft = design_factory(author)
    resp = client.post(f"/api/designs/{draft['id']}/executions", headers=runner)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Only published designs can be executed"

    design = design_factory(author, publish=True)
    client.patch(f"/api/designs/{design['id']}", json={"summary": "wip"}, headers=author)
    resp = client.post(f"/api/designs/{design['id']}/executions", headers=runner)
    assert resp.status_code == 400
    assert "new draft version" in resp.json()["detail"]


def test_only_lead_can_update_or_cancel(client, make_user, design_factory):
    _, author = make_user()
    _, runner = make_user()
    _, other = make_user()
    design = design_factory(author, publish=True)
    execution = client.post(f"/api/designs/{design['id']}/executions", headers=runner).json()

    resp = client.patch(
        f"/api/executions/{execution['id']}", json={"methodology_deviations": "none"}, headers=other
    )
    assert resp.status_code == 403
    assert client.delete(f"/api/executions/{execution['id']}", headers=other).status_code == 403
    assert client.get(f"/api/designs/{design['id']}").json()["execution_count"] == 1


def test_co_experimenter_changes_notify(client, make_user, design_factory):
    _, author = make_user()
    runner_id, runner = make_user(full_name="Rita Runner")
    helper_id, _ = make_user()
    design = design_factory(author, publish=True)
    execution = client.post(f"/api/designs/{design['id']}/executions", headers=runner).json()

    resp = client.patch(
        f"/api/executions/{execution['id']}",
        json={"co_experimenter_ids": [str(helper_id), str(helper_id)]},
        headers=runner,
    )
    assert resp.status_code == 200
    assert resp.json()["co_experimenter_ids"] == [str(helper_id)]
    added = _notifications(helper_id, "added_as_co_experimenter")
    assert len(added) == 1
    assert added[0].message.startswith("Rita Runner")

    resp = client.patch(
        f"/api/executions/{execution['id']}", json={"co_experimenter_ids": []}, headers=runner
    )
    assert resp.status_code == 200
    assert len(_notifications(helper_id, "removed_as_co_experimenter")) == 1
    assert _notifications(runner_id, "added_as_co_experimenter") == []


def test_list_executions_for_design(client, make_user, design_factory):
    _, author = make_user()
    _, runner = make_user()
    design = design_factory(author, publish=True)
    client.post(f"/api/designs/{design['id']}/executions", headers=runner)
    resp = client.get(f"/api/designs/{design['id']}/executions")
    assert resp.status_code == 200
    assert len(resp.json()) == 1


def test_unknown_execution(client, make_user):
    _, headers = make_user()
    assert client.delete(f"/api/executions/{uuid.uuid4()}", headers=headers).status_code == 404


def test_stale_cancel_keeps_lock_for_remaining_run(client, make_user, design_factory, db_session):
    _, author = make_user()
    runner_id, runner = make_user()
    design = design_factory(author, publish=True)
    first = client.post(f"/api/designs/{design['id']}/executions", headers=runner).json()
    client.post(f"/api/designs/{design['id']}/executions", headers=runner)

    runner_user = db_session.get(models.User, runner_id)
    stale = db_session.get(models.DesignExecution, uuid.UUID(first["id"]))
    assert stale.status == "in_progress"

    assert client.delete(f"/api/executions/{first['id']}", headers=runner).status_code == 200
    with pytest.raises(NotFound):
        execution_service.cancel_execution(db_session, uuid.UUID(first["id"]), user=runner_user)

    data = client.get(f"/api/designs/{design['id']}").json()
    assert data["execution_count"] == 1
    assert data["status"] == "locked"


def test_failed_cancel_leaves_no_partial_state(client, make_user, design_factory, db_session, monkeypatch):
    _, author = make_user()
    runner_id, runner = make_user()
    design = design_factory(author, publish=True)
    execution = client.post(f"/api/designs/{design['id']}/executions", headers=runner).json()
    runner_user = db_session.get(models.User, runner_id)

    def failing_commit():
        raise RuntimeError("storage unavailable")

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(RuntimeError):
        execution_service.cancel_execution(db_session, uuid.UUID(execution["id"]), user=runner_user)
    monkeypatch.undo()

    data = client.get(f"/api/designs/{design['id']}").json()
    assert data["execution_count"] == 1
    assert data["status"] == "locked"
    resp = client.get(f"/api/executions/{execution['id']}", headers=runner)
    assert resp.status_code == 200
    assert resp.json()["status"] == "in_progress"
