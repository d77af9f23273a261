"""Append-only contribution ledger.

Every scoring-relevant event produces one immutable ``LedgerEntry`` per
beneficiary. Callers go through :func:`record` / :func:`record_many`, which hand
the write to the side-effect queue; a failed write is logged and never reaches
the request that triggered it. Entries are never updated or deleted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)

DESIGN_PUBLISHED = "DESIGN_PUBLISHED"
DESIGN_ENDORSED = "DESIGN_ENDORSED"
DESIGN_REFERENCED_BY_DESIGN = "DESIGN_REFERENCED_BY_DESIGN"
DESIGN_DERIVED_CREATED = "DESIGN_DERIVED_CREATED"
DESIGN_REVIEW_SUBMITTED = "DESIGN_REVIEW_SUBMITTED"
REVIEW_SUGGESTION_ACCEPTED_ON_DESIGN = "REVIEW_SUGGESTION_ACCEPTED_ON_DESIGN"
DESIGN_VERSION_PUBLISHED_WITH_ACCEPTED_SUGGESTION = "DESIGN_VERSION_PUBLISHED_WITH_ACCEPTED_SUGGESTION"
SAFETY_SUGGESTION_ACCEPTED = "SAFETY_SUGGESTION_ACCEPTED"

EVENT_TYPES = frozenset(
    {
        DESIGN_PUBLISHED,
        DESIGN_ENDORSED,
        DESIGN_REFERENCED_BY_DESIGN,
        DESIGN_DERIVED_CREATED,
        DESIGN_REVIEW_SUBMITTED,
        REVIEW_SUGGESTION_ACCEPTED_ON_DESIGN,
        DESIGN_VERSION_PUBLISHED_WITH_ACCEPTED_SUGGESTION,
        SAFETY_SUGGESTION_ACCEPTED,
    }
)

CONTEXT_KEYS = (
    "design_id",
    "design_version",
    "review_id",
    "suggestion_id",
    "referencing_design_id",
    "fork_design_id",
)
_UUID_CONTEXT_KEYS = set(CONTEXT_KEYS) - {"design_version"}


def _normalize_context(context: dict[str, Any]) -> dict[str, Any]:
    unknown = set(context) - set(CONTEXT_KEYS)
    if unknown:
        raise ValueError(f"Unknown ledger context keys: {', '.join(sorted(unknown))}")
    normalized: dict[str, Any] = {}
    for key, value in context.items():
        if value is None:
            continue
        normalized[key] = int(value) if key == "design_version" else str(value)
    return normalized


def append_entries(
    db: Session,
    user_ids: Iterable[str | UUID],
    event_type: str,
    context: dict[str, Any],
) -> list[models.LedgerEntry]:
    """Insert one ledger row per beneficiary. Used by the ledger task."""

    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown ledger event type: {event_type}")
    payload = _normalize_context(context)
    columns = {
        key: UUID(value) if key in _UUID_CONTEXT_KEYS else value
        for key, value in payload.items()
    }
    now = datetime.now(timezone.utc)
    entries = [
        models.LedgerEntry(
            user_id=UUID(str(user_id)),
            event_type=event_type,
            created_at=now,
            **columns,
        )
        for user_id in user_ids
    ]
    db.add_all(entries)
    return entries


def record(user_id: str | UUID, event_type: str, **context: Any) -> None:
    """Fire-and-forget a single ledger event."""

    record_many([user_id], event_type, **context)


def record_many(user_ids: Iterable[str | UUID], event_type: str, **context: Any) -> None:
    """Fan the same event out to several beneficiaries, e.g. every co-author."""

    from .tasks import dispatch_ledger_events

    recipients = [str(uid) for uid in user_ids]
    if not recipients:
        return
    try:
        payload = _normalize_context(context)
    except ValueError:
        logger.exception("Dropping malformed %s ledger event", event_type)
        return
    dispatch_ledger_events(recipients, event_type, payload)
