"""Tests for per-visitor funnel stage tracking."""

from __future__ import annotations

import datetime

import pytest
from sqlalchemy.orm import Session

from funnel_backend.services.errors import InvalidCriteria, InvalidStage
from funnel_backend.services.funnel_progress import (
    SYSTEM_OWNER,
    read_funnel_progress,
    update_funnel_progress,
)


class TestStages:
    def test_first_update_creates_row(self, db: Session):
        progress = update_funnel_progress(db, visitor_id="v1", current_stage="rdv_scheduled")

        assert progress.current_stage == "rdv_scheduled"
        assert progress.rdv_scheduled_at is not None
        assert progress.user_id == SYSTEM_OWNER

    def test_last_write_wins_and_timestamps_are_kept(self, db: Session):
        update_funnel_progress(db, visitor_id="v1", current_stage="rdv_scheduled")
        progress = update_funnel_progress(db, visitor_id="v1", current_stage="rdv_canceled")

        assert progress.current_stage == "rdv_canceled"
        assert progress.rdv_scheduled_at is not None
        assert progress.rdv_canceled_at is not None

    def test_backwards_move_is_allowed(self, db: Session):
        update_funnel_progress(db, visitor_id="v1", current_stage="payment_succeeded", amount=10)
        progress = update_funnel_progress(db, visitor_id="v1", current_stage="rdv_scheduled")

        assert progress.current_stage == "rdv_scheduled"
        assert progress.payment_at is not None
        assert progress.amount == 10

    def test_payment_fields(self, db: Session):
        progress = update_funnel_progress(
            db,
            visitor_id="v1",
            current_stage="payment_succeeded",
            owner_id="user-1",
            amount=49.5,
            product_id="prod_abc",
            payment_data={"session_id": "cs_1"},
        )

        assert progress.amount == 49.5
        assert progress.product_id == "prod_abc"
        assert progress.payment_data == {"session_id": "cs_1"}
        assert progress.user_id == "user-1"

    def test_explicit_timestamp_is_stored_as_naive_utc(self, db: Session):
        progress = update_funnel_progress(
            db,
            visitor_id="v1",
            current_stage="rdv_completed",
            stage_timestamp="2024-03-01T10:00:00+02:00",
        )

        assert progress.rdv_completed_at == datetime.datetime(2024, 3, 1, 8, 0, 0)

    def test_one_row_per_visitor(self, db: Session):
        first = update_funnel_progress(db, visitor_id="v1", current_stage="rdv_scheduled")
        second = update_funnel_progress(db, visitor_id="v1", current_stage="rdv_completed")
        assert first.id == second.id


class TestReschedule:
    def test_reschedule_without_row_is_noop(self, db: Session):
        assert update_funnel_progress(db, visitor_id="v1", current_stage="rdv_rescheduled") is None
        assert read_funnel_progress(db, "v1") is None

    def test_reschedule_keeps_current_stage(self, db: Session):
        update_funnel_progress(db, visitor_id="v1", current_stage="rdv_scheduled")
        progress = update_funnel_progress(db, visitor_id="v1", current_stage="rdv_rescheduled")

        assert progress.current_stage == "rdv_scheduled"


class TestValidation:
    def test_unknown_stage_rejected(self, db: Session):
        with pytest.raises(InvalidStage):
            update_funnel_progress(db, visitor_id="v1", current_stage="signed_contract")
        assert read_funnel_progress(db, "v1") is None

    def test_missing_visitor_rejected(self, db: Session):
        with pytest.raises(InvalidCriteria):
            update_funnel_progress(db, visitor_id="", current_stage="rdv_scheduled")

    def test_read_unknown_visitor(self, db: Session):
        assert read_funnel_progress(db, "never-seen") is None
