"""Tests for lead find-or-create and identifier linking."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from funnel_backend.models import Lead, LeadEmail, LeadVisitorId
from funnel_backend.services.errors import InvalidCriteria, NotFound
from funnel_backend.services.identity_resolver import (
    IdentityCriteria,
    _create_lead,
    find_lead_by_email,
    find_lead_by_visitor,
    get_lead,
    resolve_lead,
)


def _count(db: Session, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _emails(db: Session, lead_id: int) -> list[LeadEmail]:
    return list(
        db.execute(select(LeadEmail).where(LeadEmail.lead_id == lead_id).order_by(LeadEmail.id))
        .scalars()
        .all()
    )


def _visitor_ids(db: Session, lead_id: int) -> set[str]:
    return set(
        db.execute(select(LeadVisitorId.visitor_id).where(LeadVisitorId.lead_id == lead_id))
        .scalars()
        .all()
    )


class TestNewIdentity:
    def test_email_only_creates_one_lead_with_primary_email(self, db: Session):
        lead = resolve_lead(db, IdentityCriteria(email="new@x.com"))

        assert _count(db, Lead) == 1
        emails = _emails(db, lead.id)
        assert [e.email for e in emails] == ["new@x.com"]
        assert emails[0].is_primary is True
        assert emails[0].source_action == "lead_stitching"
        assert _count(db, LeadVisitorId) == 0

    def test_visitor_only_creates_lead_without_email(self, db: Session):
        lead = resolve_lead(db, IdentityCriteria(visitor_id="v_1"), source="tracking")

        assert lead.source_system == "tracking"
        assert _count(db, LeadEmail) == 0
        assert _visitor_ids(db, lead.id) == {"v_1"}

    def test_owner_is_recorded(self, db: Session):
        lead = resolve_lead(db, IdentityCriteria(email="o@x.com"), owner_id="user-42")
        assert lead.owner_id == "user-42"
        assert lead.status == "new"

    def test_empty_criteria_rejected(self, db: Session):
        with pytest.raises(InvalidCriteria):
            resolve_lead(db, IdentityCriteria())

    def test_blank_strings_count_as_missing(self, db: Session):
        with pytest.raises(InvalidCriteria):
            resolve_lead(db, IdentityCriteria(email="   ", visitor_id=""))
        assert _count(db, Lead) == 0


class TestIdempotency:
    def test_same_arguments_twice_return_same_lead(self, db: Session):
        criteria = IdentityCriteria(email="a@x.com", visitor_id="v1")

        first = resolve_lead(db, criteria)
        second = resolve_lead(db, criteria)

        assert first.id == second.id
        assert _count(db, Lead) == 1
        assert _count(db, LeadEmail) == 1
        assert _count(db, LeadVisitorId) == 1

    def test_email_is_normalized(self, db: Session):
        first = resolve_lead(db, IdentityCriteria(email="  Mixed@Example.COM "))
        second = resolve_lead(db, IdentityCriteria(email="mixed@example.com"))

        assert first.id == second.id
        assert [e.email for e in _emails(db, first.id)] == ["mixed@example.com"]


class TestMerge:
    def test_merge_by_email_adds_visitor(self, db: Session):
        lead = resolve_lead(db, IdentityCriteria(email="a@x.com", visitor_id="v1"))

        again = resolve_lead(db, IdentityCriteria(email="a@x.com", visitor_id="v2"))

        assert again.id == lead.id
        assert _visitor_ids(db, lead.id) == {"v1", "v2"}
        assert _count(db, Lead) == 1

    def test_merge_by_visitor_links_email_as_non_primary(self, db: Session):
        lead = resolve_lead(db, IdentityCriteria(visitor_id="v9"))

        again = resolve_lead(db, IdentityCriteria(email="late@x.com", visitor_id="v9"))

        assert again.id == lead.id
        emails = _emails(db, lead.id)
        assert [e.email for e in emails] == ["late@x.com"]
        # Emails linked to an existing lead are never primary.
        assert emails[0].is_primary is False

    def test_second_email_is_not_primary(self, db: Session):
        lead = resolve_lead(db, IdentityCriteria(email="first@x.com", visitor_id="v1"))

        resolve_lead(db, IdentityCriteria(email="second@x.com", visitor_id="v1"))

        emails = {e.email: e.is_primary for e in _emails(db, lead.id)}
        assert emails == {"first@x.com": True, "second@x.com": False}

    def test_email_wins_over_visitor_and_visitor_is_not_reassigned(self, db: Session):
        by_email = resolve_lead(db, IdentityCriteria(email="a@x.com"))
        by_visitor = resolve_lead(db, IdentityCriteria(visitor_id="v1"))
        assert by_email.id != by_visitor.id

        resolved = resolve_lead(db, IdentityCriteria(email="a@x.com", visitor_id="v1"))

        assert resolved.id == by_email.id
        # First writer keeps the visitor token.
        assert _visitor_ids(db, by_visitor.id) == {"v1"}
        assert _visitor_ids(db, by_email.id) == set()

    def test_repeat_visit_bumps_last_seen(self, db: Session):
        resolve_lead(db, IdentityCriteria(visitor_id="v1"))
        link = db.execute(select(LeadVisitorId)).scalar_one()
        first_seen = link.last_seen_at

        resolve_lead(db, IdentityCriteria(visitor_id="v1"))
        db.refresh(link)

        assert link.last_seen_at >= first_seen


class TestFirstSightRace:
    def test_create_returns_none_when_identity_already_claimed(self, db: Session):
        resolve_lead(db, IdentityCriteria(email="race@x.com"))

        loser = _create_lead(db, IdentityCriteria(email="race@x.com"), None, "api")
        db.commit()

        assert loser is None
        assert _count(db, Lead) == 1
        assert _count(db, LeadEmail) == 1

    def test_resolve_recovers_after_losing_race(self, db: Session, monkeypatch: pytest.MonkeyPatch):
        winner = resolve_lead(db, IdentityCriteria(email="race@x.com"))

        import funnel_backend.services.identity_resolver as resolver

        real_find = resolver._find_existing
        calls = {"n": 0}

        def blind_first_lookup(session, criteria):
            calls["n"] += 1
            if calls["n"] == 1:
                return None, None
            return real_find(session, criteria)

        monkeypatch.setattr(resolver, "_find_existing", blind_first_lookup)

        resolved = resolve_lead(db, IdentityCriteria(email="race@x.com"))

        assert resolved.id == winner.id
        assert _count(db, Lead) == 1


class TestLookups:
    def test_get_lead_missing_raises(self, db: Session):
        with pytest.raises(NotFound):
            get_lead(db, 999)

    def test_find_by_visitor_and_email(self, db: Session):
        lead = resolve_lead(db, IdentityCriteria(email="f@x.com", visitor_id="v_f"))

        assert find_lead_by_visitor(db, "v_f").id == lead.id
        assert find_lead_by_email(db, "F@X.com").id == lead.id
        assert find_lead_by_visitor(db, "unknown") is None
        assert find_lead_by_email(db, "") is None
