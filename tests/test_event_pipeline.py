"""End-to-end tests for resolve -> touchpoint -> funnel."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

import pytest

from funnel_backend.models import Lead, Touchpoint
from funnel_backend.services import event_pipeline
from funnel_backend.services.bridge_store import consume_association, record_association
from funnel_backend.services.errors import InvalidCriteria, StorageError
from funnel_backend.services.event_pipeline import IdentityEvent, process_identity_event
from funnel_backend.services.funnel_progress import read_funnel_progress
from funnel_backend.services.identity_resolver import IdentityCriteria, resolve_lead
from funnel_backend.services.touchpoints import list_touchpoints_by_visitor


def _lead_count(db: Session) -> int:
    return db.execute(select(func.count(Lead.id))).scalar_one()


class TestEndToEnd:
    def test_scheduled_then_payment_without_visitor(self, db: Session):
        event_a = IdentityEvent(
            event_type="rdv_scheduled",
            source="calendly",
            email="lead@test.com",
            visitor_id="v_123",
        )
        result_a = process_identity_event(db, event_a)

        assert result_a.touchpoint_id is not None
        assert result_a.funnel_stage == "rdv_scheduled"
        assert read_funnel_progress(db, "v_123").current_stage == "rdv_scheduled"
        tps = list_touchpoints_by_visitor(db, "v_123")
        assert [tp.event_type for tp in tps] == ["rdv_scheduled"]
        assert tps[0].lead_id == result_a.lead_id

        event_b = IdentityEvent(
            event_type="payment_succeeded",
            source="stripe",
            email="lead@test.com",
            amount=99.0,
        )
        result_b = process_identity_event(db, event_b)

        assert result_b.lead_id == result_a.lead_id
        assert result_b.skipped_reason == "no_visitor_id"
        assert result_b.touchpoint_id is None
        # Payment was not attributed to v_123 behind our back.
        assert read_funnel_progress(db, "v_123").current_stage == "rdv_scheduled"
        assert db.execute(select(func.count(Touchpoint.id))).scalar_one() == 1
        assert resolve_lead(db, IdentityCriteria(email="lead@test.com")).id == result_a.lead_id
        assert _lead_count(db) == 1

    def test_bridge_supplies_missing_visitor(self, db: Session):
        record_association(db, email="lead@test.com", visitor_id="v_bridge")

        result = process_identity_event(
            db,
            IdentityEvent(event_type="payment_succeeded", source="stripe", email="lead@test.com", amount=20.0),
        )

        assert result.visitor_id == "v_bridge"
        assert result.visitor_source == "bridge"
        progress = read_funnel_progress(db, "v_bridge")
        assert progress.current_stage == "payment_succeeded"
        assert progress.amount == 20.0

    def test_bridge_is_not_used_when_disabled(self, db: Session):
        record_association(db, email="lead@test.com", visitor_id="v_bridge")

        result = process_identity_event(
            db,
            IdentityEvent(
                event_type="rdv_canceled",
                source="calendly",
                email="lead@test.com",
                use_bridge=False,
            ),
        )

        assert result.skipped_reason == "no_visitor_id"
        assert read_funnel_progress(db, "v_bridge") is None

    def test_non_stage_event_records_touchpoint_only(self, db: Session):
        result = process_identity_event(
            db,
            IdentityEvent(event_type="lead_capture", source="optin", email="a@x.com", visitor_id="v1"),
        )

        assert result.touchpoint_id is not None
        assert result.funnel_stage is None
        assert read_funnel_progress(db, "v1") is None

    def test_no_identity_propagates(self, db: Session):
        with pytest.raises(InvalidCriteria):
            process_identity_event(db, IdentityEvent(event_type="rdv_scheduled", source="api"))


class TestPartialFailure:
    def test_touchpoint_failure_is_swallowed(self, db: Session, monkeypatch: pytest.MonkeyPatch):
        def broken_touchpoint(*args, **kwargs):
            raise StorageError("disk full")

        monkeypatch.setattr(event_pipeline, "create_touchpoint", broken_touchpoint)

        result = process_identity_event(
            db,
            IdentityEvent(event_type="rdv_scheduled", source="calendly", email="a@x.com", visitor_id="v1"),
        )

        assert result.touchpoint_id is None
        assert result.funnel_stage == "rdv_scheduled"
        assert _lead_count(db) == 1

    def test_bridge_failure_counts_as_miss(self, db: Session, monkeypatch: pytest.MonkeyPatch):
        def broken_bridge(*args, **kwargs):
            raise StorageError("bridge down")

        monkeypatch.setattr(event_pipeline, "claim_association", broken_bridge)

        result = process_identity_event(
            db,
            IdentityEvent(event_type="payment_succeeded", source="stripe", email="a@x.com"),
        )

        assert result.skipped_reason == "no_visitor_id"
        assert _lead_count(db) == 1

    def test_funnel_failure_propagates(self, db: Session, monkeypatch: pytest.MonkeyPatch):
        def broken_funnel(*args, **kwargs):
            raise StorageError("funnel down")

        monkeypatch.setattr(event_pipeline, "update_funnel_progress", broken_funnel)

        with pytest.raises(StorageError):
            process_identity_event(
                db,
                IdentityEvent(event_type="rdv_scheduled", source="calendly", email="a@x.com", visitor_id="v1"),
            )

    def test_failed_funnel_update_releases_bridge_for_redelivery(
        self, db: Session, monkeypatch: pytest.MonkeyPatch
    ):
        record_association(db, email="buyer@x.com", visitor_id="v_bridge")
        real_update = event_pipeline.update_funnel_progress
        calls = {"n": 0}

        def flaky_funnel(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StorageError("funnel down")
            return real_update(*args, **kwargs)

        monkeypatch.setattr(event_pipeline, "update_funnel_progress", flaky_funnel)
        event = IdentityEvent(
            event_type="payment_succeeded", source="stripe", email="buyer@x.com", amount=49.0
        )

        with pytest.raises(StorageError):
            process_identity_event(db, event)

        redelivered = process_identity_event(db, event)

        assert redelivered.visitor_id == "v_bridge"
        assert redelivered.visitor_source == "bridge"
        progress = read_funnel_progress(db, "v_bridge")
        assert progress.current_stage == "payment_succeeded"
        assert progress.amount == 49.0

    def test_failed_resolution_releases_bridge(self, db: Session, monkeypatch: pytest.MonkeyPatch):
        record_association(db, email="buyer@x.com", visitor_id="v_bridge")

        def broken_resolve(*args, **kwargs):
            raise StorageError("leads down")

        monkeypatch.setattr(event_pipeline, "resolve_lead", broken_resolve)

        with pytest.raises(StorageError):
            process_identity_event(
                db, IdentityEvent(event_type="payment_succeeded", source="stripe", email="buyer@x.com")
            )

        assert consume_association(db, "buyer@x.com") == "v_bridge"
