import uuid

import pytest

from conftest import TestingSessionLocal
from openbench import models
from openbench.errors import ValidationError
from openbench.services import reviews as review_service


def _ledger(user_id, event_type):
    db = TestingSessionLocal()
    try:
        return (
            db.query(models.LedgerEntry)
            .filter(models.LedgerEntry.user_id == user_id, models.LedgerEntry.event_type == event_type)
            .all()
        )
    finally:
        db.close()


def _review_with_suggestion(client, headers, design_id, **suggestion):
    body = {
        "general_comment": "Looks solid",
        "readiness_signal": "almost_ready",
        "suggestions": [
            {
                "field_ref": "summary",
                "proposed_text": "Mention the lamp wattage.",
                **suggestion,
            }
        ],
    }
    resp = client.post(f"/api/designs/{design_id}/reviews", json=body, headers=headers)
    assert resp.status_code in (200, 201), resp.text
    return resp.json()


def test_endorsement_requires_comment_then_counts(client, make_user, design_factory):
    author_id, author = make_user()
    reviewer_id, reviewer = make_user()
    design = design_factory(author, publish=True)
    design_id = design["id"]

    resp = client.post(
        f"/api/designs/{design_id}/reviews", json={"endorsement": True}, headers=reviewer
    )
    assert resp.status_code == 400

    resp = client.post(
        f"/api/designs/{design_id}/reviews",
        json={"endorsement": True, "general_comment": "Ready to run"},
        headers=reviewer,
    )
    assert resp.status_code == 201
    review = resp.json()
    assert review["version_number"] == 1
    assert review["endorsement"] is True

    data = client.get(f"/api/designs/{design_id}").json()
    assert data["review_count"] == 1
    assert data["review_status"] == "under_review"
    assert len(_ledger(reviewer_id, "DESIGN_REVIEW_SUBMITTED")) == 1
    assert len(_ledger(author_id, "DESIGN_ENDORSED")) == 1


def test_second_review_updates_in_place(client, make_user, design_factory):
    _, author = make_user()
    reviewer_id, reviewer = make_user()
    design = design_factory(author, publish=True)
    first = _review_with_suggestion(client, reviewer, design["id"])

    resp = client.post(
        f"/api/designs/{design['id']}/reviews",
        json={"general_comment": "Revised thoughts", "readiness_signal": "ready"},
        headers=reviewer,
    )
    assert resp.status_code == 200
    second = resp.json()
    assert second["id"] == first["id"]
    assert second["general_comment"] == "Revised thoughts"
    assert second["suggestions"] == []

    data = client.get(f"/api/designs/{design['id']}").json()
    assert data["review_count"] == 1
    assert len(_ledger(reviewer_id, "DESIGN_REVIEW_SUBMITTED")) == 1


def test_review_rules(client, make_user, design_factory):
    _, author = make_user()
    _, reviewer = make_user()
    draft = design_factory(author)
    design = design_factory(author, publish=True)

    resp = client.post(
        f"/api/designs/{design['id']}/reviews", json={"general_comment": "mine"}, headers=author
    )
    assert resp.status_code == 403
    resp = client.post(
        f"/api/designs/{draft['id']}/reviews", json={"general_comment": "early"}, headers=reviewer
    )
    assert resp.status_code == 403
    resp = client.post(f"/api/designs/{design['id']}/reviews", json={}, headers=reviewer)
    assert resp.status_code == 400

    bad = {"suggestions": [{"field_ref": "summary", "new_field_name": "extra", "comment": "x"}]}
    resp = client.post(f"/api/designs/{design['id']}/reviews", json=bad, headers=reviewer)
    assert resp.status_code == 400
    bad = {"suggestions": [{"field_ref": "summary"}]}
    resp = client.post(f"/api/designs/{design['id']}/reviews", json=bad, headers=reviewer)
    assert resp.status_code == 400


def test_locked_design_cannot_be_reviewed(client, make_user, design_factory):
    _, author = make_user()
    _, reviewer = make_user()
    design = design_factory(author, publish=True)
    client.post(f"/api/designs/{design['id']}/executions", headers=reviewer)
    resp = client.post(
        f"/api/designs/{design['id']}/reviews", json={"general_comment": "late"}, headers=reviewer
    )
    assert resp.status_code == 403


def test_accept_seeds_a_single_draft(client, make_user, design_factory):
    _, author = make_user()
    reviewer_id, reviewer = make_user()
    _, second_reviewer = make_user()
    design = design_factory(author, publish=True)
    design_id = design["id"]

    first = _review_with_suggestion(client, reviewer, design_id, suggestion_type="safety_concern")
    second = _review_with_suggestion(client, second_reviewer, design_id)
    first_sid = first["suggestions"][0]["id"]
    second_sid = second["suggestions"][0]["id"]

    resp = client.post(
        f"/api/designs/{design_id}/reviews/{first['id']}/suggestions/{first_sid}/accept",
        headers=author,
    )
    assert resp.status_code == 200
    assert resp.json()["draft_created"] is True
    assert resp.json()["suggestion"]["status"] == "accepted"

    after_first = client.get(f"/api/designs/{design_id}", headers=author).json()
    assert after_first["has_draft_changes"] is True
    assert after_first["version"] == 2

    resp = client.post(
        f"/api/designs/{design_id}/reviews/{second['id']}/suggestions/{second_sid}/accept",
        headers=author,
    )
    assert resp.status_code == 200
    assert resp.json()["draft_created"] is False
    assert client.get(f"/api/designs/{design_id}", headers=author).json()["version"] == 2

    db = TestingSessionLocal()
    try:
        drafts = db.query(models.DesignDraft).filter(
            models.DesignDraft.design_id == uuid.UUID(design_id)
        ).count()
    finally:
        db.close()
    assert drafts == 1
    assert len(_ledger(reviewer_id, "REVIEW_SUGGESTION_ACCEPTED_ON_DESIGN")) == 1
    assert len(_ledger(reviewer_id, "SAFETY_SUGGESTION_ACCEPTED")) == 1

    resp = client.post(
        f"/api/designs/{design_id}/reviews/{first['id']}/suggestions/{first_sid}/accept",
        headers=author,
    )
    assert resp.status_code == 400


def test_republish_credits_accepted_reviewers(client, make_user, design_factory):
    _, author = make_user()
    reviewer_id, reviewer = make_user()
    design = design_factory(author, publish=True)
    review = _review_with_suggestion(client, reviewer, design["id"])
    sid = review["suggestions"][0]["id"]
    client.post(
        f"/api/designs/{design['id']}/reviews/{review['id']}/suggestions/{sid}/accept",
        headers=author,
    )
    resp = client.post(f"/api/designs/{design['id']}/publish", json={}, headers=author)
    assert resp.status_code == 200
    assert resp.json()["published_version"] == 2
    assert len(_ledger(reviewer_id, "DESIGN_VERSION_PUBLISHED_WITH_ACCEPTED_SUGGESTION")) == 1

    old = client.get(f"/api/designs/{design['id']}/reviews/{review['id']}").json()
    assert old["status"] == "superseded"
    summary = client.get(f"/api/designs/{design['id']}/review-summary").json()
    assert summary["version_number"] == 2
    assert summary["review_count"] == 0


def test_only_owner_manages_suggestions(client, make_user, design_factory):
    _, author = make_user()
    _, reviewer = make_user()
    design = design_factory(author, publish=True)
    review = _review_with_suggestion(client, reviewer, design["id"])
    sid = review["suggestions"][0]["id"]
    base = f"/api/designs/{design['id']}/reviews/{review['id']}/suggestions/{sid}"

    assert client.post(f"{base}/accept", headers=reviewer).status_code == 403
    assert client.post(f"{base}/close", headers=reviewer).status_code == 403

    resp = client.post(f"{base}/close", headers=author)
    assert resp.status_code == 200
    assert resp.json()["status"] == "closed"

    missing = f"/api/designs/{design['id']}/reviews/{review['id']}/suggestions/{uuid.uuid4()}/close"
    assert client.post(missing, headers=author).status_code == 404


def test_reply_is_set_once(client, make_user, design_factory):
    _, author = make_user()
    reviewer_id, reviewer = make_user()
    design = design_factory(author, publish=True)
    review = _review_with_suggestion(client, reviewer, design["id"])
    sid = review["suggestions"][0]["id"]
    url = f"/api/designs/{design['id']}/reviews/{review['id']}/suggestions/{sid}/reply"

    resp = client.post(url, json={"reply": "  "}, headers=author)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Reply text is required."

    resp = client.post(url, json={"reply": "Thanks, will do."}, headers=author)
    assert resp.status_code == 200
    assert resp.json()["owner_reply"] == "Thanks, will do."

    resp = client.post(url, json={"reply": "Again"}, headers=author)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "A reply has already been sent for this suggestion."

    db = TestingSessionLocal()
    try:
        replies = (
            db.query(models.Notification)
            .filter(models.Notification.user_id == reviewer_id, models.Notification.type == "review_interaction")
            .all()
        )
    finally:
        db.close()
    assert [n.meta["review_action"] for n in replies] == ["replied"]


def test_endorse_endpoint_is_idempotent(client, make_user, design_factory):
    author_id, author = make_user()
    _, reviewer = make_user()
    design = design_factory(author, publish=True)
    url = f"/api/designs/{design['id']}/endorsements"

    assert client.post(url, json={}, headers=reviewer).status_code == 400
    resp = client.post(url, json={"comment": "Great protocol"}, headers=reviewer)
    assert resp.status_code == 201
    resp = client.post(url, json={"comment": "Great protocol"}, headers=reviewer)
    assert resp.status_code == 200

    endorsements = client.get(url).json()
    assert len(endorsements) == 1
    assert endorsements[0]["comment"] == "Great protocol"
    assert client.get(f"/api/designs/{design['id']}").json()["review_count"] == 1
    assert len(_ledger(author_id, "DESIGN_ENDORSED")) == 1


def test_endorse_upgrades_existing_review(client, make_user, design_factory):
    _, author = make_user()
    _, reviewer = make_user()
    design = design_factory(author, publish=True)
    review = _review_with_suggestion(client, reviewer, design["id"])

    resp = client.post(
        f"/api/designs/{design['id']}/endorsements", json={"comment": "Now convinced"}, headers=reviewer
    )
    assert resp.status_code == 200
    assert resp.json()["review_id"] == review["id"]
    assert client.get(f"/api/designs/{design['id']}").json()["review_count"] == 1


def test_review_summary_and_listing(client, make_user, design_factory):
    _, author = make_user()
    _, reviewer = make_user()
    _, endorser = make_user()
    design = design_factory(author, publish=True)
    _review_with_suggestion(client, reviewer, design["id"])
    client.post(
        f"/api/designs/{design['id']}/endorsements", json={"comment": "Yes"}, headers=endorser
    )

    anon = client.get(f"/api/designs/{design['id']}/review-summary").json()
    assert anon == {
        "endorsement_count": 1,
        "review_count": 1,
        "version_number": 1,
        "is_locked": False,
        "reviewable": True,
        "user_has_reviewed": None,
    }
    mine = client.get(f"/api/designs/{design['id']}/review-summary", headers=reviewer).json()
    assert mine["user_has_reviewed"] is True
    theirs = client.get(f"/api/designs/{design['id']}/review-summary", headers=author).json()
    assert theirs["user_has_reviewed"] is False

    reviews = client.get(f"/api/designs/{design['id']}/reviews").json()
    assert len(reviews) == 2
    assert client.get(f"/api/designs/{design['id']}/reviews", params={"version": 2}).json() == []


def test_review_reads_hide_drafts(client, make_user, design_factory):
    _, author = make_user()
    draft = design_factory(author)
    assert client.get(f"/api/designs/{draft['id']}/reviews").status_code == 404
    assert client.get(f"/api/designs/{draft['id']}/review-summary").status_code == 404


def test_stale_accept_does_not_credit_twice(client, make_user, design_factory, db_session):
    author_id, author = make_user()
    reviewer_id, reviewer = make_user()
    design = design_factory(author, publish=True)
    review = _review_with_suggestion(client, reviewer, design["id"], suggestion_type="safety_concern")
    sid = review["suggestions"][0]["id"]

    author_user = db_session.get(models.User, author_id)
    stale = db_session.get(models.ReviewSuggestion, uuid.UUID(sid))
    assert stale.status == "open"

    resp = client.post(
        f"/api/designs/{design['id']}/reviews/{review['id']}/suggestions/{sid}/accept",
        headers=author,
    )
    assert resp.status_code == 200

    ids = (uuid.UUID(design["id"]), uuid.UUID(review["id"]), uuid.UUID(sid))
    with pytest.raises(ValidationError):
        review_service.accept_suggestion(db_session, *ids, user=author_user)
    with pytest.raises(ValidationError):
        review_service.close_suggestion(db_session, *ids, user=author_user)

    assert len(_ledger(reviewer_id, "REVIEW_SUGGESTION_ACCEPTED_ON_DESIGN")) == 1
    assert len(_ledger(reviewer_id, "SAFETY_SUGGESTION_ACCEPTED")) == 1
    current = client.get(f"/api/designs/{design['id']}/reviews/{review['id']}").json()
    assert current["suggestions"][0]["status"] == "accepted"
