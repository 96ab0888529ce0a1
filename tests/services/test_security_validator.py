"""Tests for the pre-submission security and rate validator."""

from datetime import datetime

from sqlalchemy.orm import Session

from giftflow.cli.config import SecurityConfig
from giftflow.db.models import OrderRateLimit, OrderValidationHash, SecurityEvent
from giftflow.services.security_validator import (
    DefaultPatternPolicy,
    PatternVerdict,
    SecurityValidator,
    order_hash,
)


def _events(db: Session, event_type: str) -> list[SecurityEvent]:
    return db.query(SecurityEvent).filter(SecurityEvent.event_type == event_type).all()


class TestValidate:
    def test_clean_order_passes(self, db_session):
        validator = SecurityValidator(db_session)

        result = validator.validate("user-1", "order-1", 2500, scheduled_date="2030-01-01")

        assert result.passed is True
        assert result.blocked is False
        assert result.warnings == []
        assert len(_events(db_session, "security_check_passed")) == 1
        assert db_session.query(OrderValidationHash).count() == 1

    def test_daily_order_limit_blocks(self, db_session):
        validator = SecurityValidator(db_session, SecurityConfig(daily_order_limit=2))
        validator.track_success("user-1", "order-a", 100)
        validator.track_success("user-1", "order-b", 100)

        result = validator.validate("user-1", "order-c", 100)

        assert result.blocked is True
        assert "Rate limit exceeded" in result.reason
        assert len(_events(db_session, "rate_limit_exceeded")) == 1

    def test_daily_spend_cap_blocks(self, db_session):
        validator = SecurityValidator(db_session, SecurityConfig(daily_spend_limit_cents=5000))
        validator.track_success("user-1", "order-a", 4000)

        result = validator.validate("user-1", "order-b", 2000)

        assert result.blocked is True
        assert "Daily spending limit exceeded" in result.reason

    def test_monthly_spend_cap_blocks(self, db_session):
        limits = SecurityConfig(daily_spend_limit_cents=100_000, monthly_spend_limit_cents=3000)
        validator = SecurityValidator(db_session, limits)

        result = validator.validate("user-1", "order-a", 3500)

        assert result.blocked is True
        assert "Monthly" in result.reason

    def test_near_limit_is_only_a_warning(self, db_session):
        validator = SecurityValidator(db_session, SecurityConfig(daily_spend_limit_cents=1000))

        result = validator.validate("user-1", "order-a", 900)

        assert result.passed is True
        assert "Approaching daily spending limit" in result.warnings

    def test_duplicate_hash_warns_but_passes(self, db_session):
        validator = SecurityValidator(db_session)
        validator.validate("user-1", "order-a", 2500, scheduled_date="2030-01-01")

        result = validator.validate("user-1", "order-a", 2500, scheduled_date="2030-01-01")

        assert result.passed is True
        assert any("Duplicate order detected" in w for w in result.warnings)

    def test_burst_of_distinct_hashes_blocks(self, db_session):
        validator = SecurityValidator(
            db_session, policy=DefaultPatternPolicy(max_hashes_per_hour=1)
        )
        validator.validate("user-1", "order-a", 100)
        validator.validate("user-1", "order-b", 100)

        result = validator.validate("user-1", "order-c", 100)

        assert result.blocked is True
        assert "Suspicious order pattern" in result.reason

    def test_retry_abuse_checked_only_for_retries(self, db_session):
        validator = SecurityValidator(db_session, SecurityConfig(retry_abuse_max_retries=3))

        assert validator.validate("user-1", "order-a", 100, retry_count=0).passed
        result = validator.validate("user-1", "order-b", 100, retry_count=3)

        assert result.blocked is True
        assert "Too many retries" in result.reason

    def test_consecutive_failures_block_retries(self, db_session):
        validator = SecurityValidator(db_session, SecurityConfig(max_consecutive_failures=2))
        validator.track_failure("user-1")
        validator.track_failure("user-1")

        result = validator.validate("user-1", "order-a", 100, retry_count=1)

        assert result.blocked is True
        assert "consecutive failures" in result.reason

    def test_failing_check_degrades_to_warning(self, db_session):
        class ExplodingPolicy:
            def evaluate(self, db, user_id, order_hash, now):
                raise RuntimeError("hash table unavailable")

        validator = SecurityValidator(db_session, policy=ExplodingPolicy())

        result = validator.validate("user-1", "order-a", 100)

        assert result.passed is True
        assert any("order_pattern check unavailable" in w for w in result.warnings)

    def test_pluggable_policy_decides_blocking(self, db_session):
        class StrictPolicy:
            def evaluate(self, db, user_id, order_hash, now: datetime) -> PatternVerdict:
                return PatternVerdict(severity="critical", reason="denylisted account")

        result = SecurityValidator(db_session, policy=StrictPolicy()).validate(
            "user-1", "order-a", 100
        )

        assert result.blocked is True
        assert "denylisted account" in result.reason


class TestTracking:
    def test_success_resets_consecutive_failures(self, db_session):
        validator = SecurityValidator(db_session)
        validator.track_failure("user-1")

        validator.track_success("user-1", "order-a", 1200)

        row = db_session.get(OrderRateLimit, "user-1")
        assert row.consecutive_failures == 0
        assert row.orders_today == 1


def test_order_hash_is_deterministic():
    first = order_hash("order-1", "scheduled", 2500, "2030-01-01")

    assert first == order_hash("order-1", "scheduled", 2500, "2030-01-01")
    assert first != order_hash("order-1", "immediate", 2500, "2030-01-01")
