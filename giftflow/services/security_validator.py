"""Security and rate validation run immediately before submission.

Checks, in order:
1. Per-user daily order count
2. Daily and monthly spend caps (rolling cost_tracking sums)
3. Duplicate / suspicious-pattern detection over validation hashes
4. Retry abuse (only when the submission is a retry)

Only genuinely blocking conditions fail the check. A check that raises is
logged and degrades to a warning so validator faults never deny a
legitimate order. Every outcome is written to security_events.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from giftflow.cli.config import SecurityConfig
from giftflow.db.models import (
    AlertSeverity,
    CostTrackingEntry,
    OrderRateLimit,
    OrderValidationHash,
    SecurityEvent,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


@dataclass
class SecurityCheckResult:
    """Outcome of validate().

    Attributes:
        passed: True when nothing blocked the order.
        blocked: True when a blocking condition was found.
        warnings: Non-blocking findings.
        errors: Blocking findings.
        metadata: Per-check detail for logs and alerts.
    """

    passed: bool = True
    blocked: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def block(self, reason: str) -> None:
        self.blocked = True
        self.passed = False
        self.errors.append(reason)

    @property
    def reason(self) -> str:
        return "; ".join(self.errors) or "; ".join(self.warnings)


@dataclass
class PatternVerdict:
    """Decision of a PatternPolicy.

    Attributes:
        severity: info, warning or critical. Critical blocks.
        reason: Human-readable explanation, None when clean.
    """

    severity: str = AlertSeverity.info.value
    reason: str | None = None

    @property
    def blocking(self) -> bool:
        return self.severity == AlertSeverity.critical.value


class PatternPolicy(Protocol):
    """Decides whether a validation hash is a duplicate or an abuse pattern."""

    def evaluate(
        self,
        db: Session,
        user_id: str,
        order_hash: str,
        now: datetime,
    ) -> PatternVerdict:
        ...


class DefaultPatternPolicy:
    """Exact prior hash is a warning; a burst of distinct hashes is critical."""

    def __init__(self, max_hashes_per_hour: int = 20) -> None:
        self.max_hashes_per_hour = max_hashes_per_hour

    def evaluate(
        self,
        db: Session,
        user_id: str,
        order_hash: str,
        now: datetime,
    ) -> PatternVerdict:
        hour_ago = (now - timedelta(hours=1)).isoformat()
        recent = (
            db.query(func.count(func.distinct(OrderValidationHash.order_hash)))
            .filter(
                OrderValidationHash.user_id == user_id,
                OrderValidationHash.created_at >= hour_ago,
            )
            .scalar()
            or 0
        )
        if recent > self.max_hashes_per_hour:
            return PatternVerdict(
                severity=AlertSeverity.critical.value,
                reason=f"Suspicious order pattern: {recent} distinct submissions in the last hour",
            )

        duplicate = (
            db.query(OrderValidationHash.id)
            .filter(OrderValidationHash.order_hash == order_hash)
            .first()
        )
        if duplicate is not None:
            return PatternVerdict(
                severity=AlertSeverity.warning.value,
                reason="Duplicate order detected",
            )
        return PatternVerdict()


def order_hash(
    order_id: str,
    order_type: str,
    amount_cents: int,
    scheduled_date: str | None,
) -> str:
    """Deterministic fingerprint of a submission."""
    canonical = json.dumps(
        {
            "order_id": order_id,
            "type": order_type,
            "amount": amount_cents,
            "scheduled_date": scheduled_date,
        },
        sort_keys=True,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class SecurityValidator:
    """Per-user/per-order gate in front of the fulfillment provider.

    Attributes:
        db: SQLAlchemy session.
        limits: Configured thresholds.
        policy: Duplicate/suspicious pattern policy.
    """

    def __init__(
        self,
        db: Session,
        limits: SecurityConfig | None = None,
        policy: PatternPolicy | None = None,
    ) -> None:
        self.db = db
        self.limits = limits or SecurityConfig()
        self.policy = policy or DefaultPatternPolicy(
            self.limits.suspicious_hashes_per_hour
        )

    def validate(
        self,
        user_id: str,
        order_id: str,
        order_amount_cents: int,
        is_scheduled: bool = True,
        scheduled_date: str | None = None,
        retry_count: int = 0,
    ) -> SecurityCheckResult:
        """Run every check for one submission.

        Args:
            user_id: Purchasing account.
            order_id: Order being submitted.
            order_amount_cents: Order total in cents.
            is_scheduled: Whether the order came through the scheduled path.
            scheduled_date: Requested delivery date (YYYY-MM-DD).
            retry_count: Prior counted attempts; > 0 enables the retry check.

        Returns:
            SecurityCheckResult with passed/blocked and findings.
        """
        result = SecurityCheckResult()
        now = datetime.now(UTC)
        context = {"user_id": user_id, "order_id": order_id}

        self._guarded(
            "rate_limit", result, context,
            lambda: self._check_rate_limit(result, context, now),
        )
        self._guarded(
            "cost_limit", result, context,
            lambda: self._check_cost_limits(result, context, order_amount_cents, now),
        )
        order_type = "scheduled" if is_scheduled else "immediate"
        self._guarded(
            "order_pattern", result, context,
            lambda: self._check_pattern(
                result, context, order_type, order_amount_cents, scheduled_date, now
            ),
        )
        if retry_count > 0:
            self._guarded(
                "retry_abuse", result, context,
                lambda: self._check_retry_abuse(result, context, retry_count),
            )

        if result.passed and not result.warnings:
            self._log_event("security_check_passed", context, AlertSeverity.info.value, {})
        self.db.commit()
        return result

    def _guarded(
        self,
        check_name: str,
        result: SecurityCheckResult,
        context: dict[str, Any],
        check: Any,
    ) -> None:
        try:
            check()
        except Exception as e:
            self.db.rollback()
            logger.exception("Security check %s failed for order %s", check_name, context["order_id"])
            result.warnings.append(f"{check_name} check unavailable: {e}")

    def _check_rate_limit(
        self,
        result: SecurityCheckResult,
        context: dict[str, Any],
        now: datetime,
    ) -> None:
        row = self.db.get(OrderRateLimit, context["user_id"])
        today = now.date().isoformat()
        orders_today = row.orders_today if row is not None and row.window_date == today else 0
        result.metadata["rate_limit"] = {
            "orders_today": orders_today,
            "limit": self.limits.daily_order_limit,
        }
        if orders_today >= self.limits.daily_order_limit:
            result.block(
                f"Rate limit exceeded: {orders_today} orders today "
                f"(limit {self.limits.daily_order_limit})"
            )
            self._log_event(
                "rate_limit_exceeded", context, AlertSeverity.warning.value,
                result.metadata["rate_limit"],
            )

    def _spent_since(self, user_id: str, since: datetime) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(CostTrackingEntry.amount_cents), 0))
            .filter(
                CostTrackingEntry.user_id == user_id,
                CostTrackingEntry.created_at >= since.isoformat(),
            )
            .scalar()
        )
        return int(total or 0)

    def _check_cost_limits(
        self,
        result: SecurityCheckResult,
        context: dict[str, Any],
        amount_cents: int,
        now: datetime,
    ) -> None:
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        projected_daily = self._spent_since(context["user_id"], day_start) + amount_cents
        projected_monthly = self._spent_since(context["user_id"], month_start) + amount_cents
        daily_cap = self.limits.daily_spend_limit_cents
        monthly_cap = self.limits.monthly_spend_limit_cents
        data = {
            "projected_daily_cents": projected_daily,
            "projected_monthly_cents": projected_monthly,
            "order_amount_cents": amount_cents,
        }
        result.metadata["cost"] = data

        if projected_daily > daily_cap or projected_monthly > monthly_cap:
            which = "Daily" if projected_daily > daily_cap else "Monthly"
            result.block(f"Cost limit exceeded: {which} spending limit exceeded")
            self._log_event("cost_limit_exceeded", context, AlertSeverity.critical.value, data)
            return

        ratio = self.limits.near_limit_ratio
        if projected_daily > daily_cap * ratio:
            result.warnings.append("Approaching daily spending limit")
        elif projected_monthly > monthly_cap * ratio:
            result.warnings.append("Approaching monthly spending limit")

    def _check_pattern(
        self,
        result: SecurityCheckResult,
        context: dict[str, Any],
        order_type: str,
        amount_cents: int,
        scheduled_date: str | None,
        now: datetime,
    ) -> None:
        fingerprint = order_hash(context["order_id"], order_type, amount_cents, scheduled_date)
        verdict = self.policy.evaluate(self.db, context["user_id"], fingerprint, now)
        self.db.add(
            OrderValidationHash(
                order_hash=fingerprint,
                user_id=context["user_id"],
                order_id=context["order_id"],
                created_at=now.isoformat(),
            )
        )
        if verdict.reason is None:
            return
        if verdict.blocking:
            result.block(f"Order validation failed: {verdict.reason}")
        else:
            result.warnings.append(f"Order validation warning: {verdict.reason}")
        self._log_event(
            "validation_failed", context, verdict.severity, {"reason": verdict.reason}
        )

    def _check_retry_abuse(
        self,
        result: SecurityCheckResult,
        context: dict[str, Any],
        retry_count: int,
    ) -> None:
        row = self.db.get(OrderRateLimit, context["user_id"])
        failures = row.consecutive_failures if row is not None else 0
        data = {"retry_count": retry_count, "consecutive_failures": failures}
        if retry_count >= self.limits.retry_abuse_max_retries:
            result.block("Retry abuse detected: Too many retries for this order")
        elif failures >= self.limits.max_consecutive_failures:
            result.block("Retry abuse detected: Too many consecutive failures")
        else:
            return
        self._log_event("retry_abuse", context, AlertSeverity.critical.value, data)

    def _log_event(
        self,
        event_type: str,
        context: dict[str, Any],
        severity: str,
        data: dict[str, Any],
    ) -> None:
        self.db.add(
            SecurityEvent(
                user_id=context["user_id"],
                order_id=context["order_id"],
                event_type=event_type,
                severity=severity,
                event_data_json=json.dumps(data),
            )
        )
        if severity != AlertSeverity.info.value:
            logger.warning(
                "Security event [%s] %s for order %s",
                severity.upper(),
                event_type,
                context["order_id"],
            )

    # =========================================================================
    # Outcome tracking
    # =========================================================================

    def _rate_row(self, user_id: str) -> OrderRateLimit:
        today = datetime.now(UTC).date().isoformat()
        row = self.db.get(OrderRateLimit, user_id)
        if row is None:
            row = OrderRateLimit(
                user_id=user_id, window_date=today, orders_today=0, consecutive_failures=0
            )
            self.db.add(row)
        elif row.window_date != today:
            row.window_date = today
            row.orders_today = 0
        return row

    def track_success(self, user_id: str, order_id: str, amount_cents: int) -> None:
        """Record spend and the daily count; reset consecutive failures."""
        row = self._rate_row(user_id)
        row.orders_today += 1
        row.consecutive_failures = 0
        row.updated_at = utc_now_iso()
        self.db.add(
            CostTrackingEntry(user_id=user_id, order_id=order_id, amount_cents=amount_cents)
        )
        self.db.commit()

    def track_failure(self, user_id: str) -> None:
        """Increment the user's consecutive failure tally."""
        row = self._rate_row(user_id)
        row.consecutive_failures += 1
        row.updated_at = utc_now_iso()
        self.db.commit()
