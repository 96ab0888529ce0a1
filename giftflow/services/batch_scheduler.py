"""Scheduled batch processor for future-dated gift orders.

Finds orders due for submission, runs the security gate, claims each order
with a compare-and-swap lock, captures payment, submits to the fulfillment
provider and routes failures through the error classifier.

The batch is a fold: process_order() returns an OrderResult for every
order and never raises, so one order's failure cannot abort the run.

Example:
    scheduler = BatchScheduler(db, fulfillment=client, payments=gateway)
    summary = await scheduler.run()
"""

import asyncio
import json
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from giftflow.cli.config import SchedulerConfig
from giftflow.db.models import (
    AlertSeverity,
    CronExecutionLog,
    CronRunStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    utc_now_iso,
)
from giftflow.errors.classification import Classification, ClassificationType, classify
from giftflow.services.alert_service import raise_alert
from giftflow.services.errors import FulfillmentProviderError, PaymentCaptureError
from giftflow.services.fulfillment_client import FulfillmentClient, SubmitResult
from giftflow.services.missed_orders import detect_missed_orders
from giftflow.services.notification_queue import NotificationType, notify_order
from giftflow.services.order_notes import merge_notes
from giftflow.services.order_state import compare_and_swap, transition
from giftflow.services.payment_gateway import PaymentGateway
from giftflow.services.security_validator import SecurityValidator
from giftflow.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

CRON_NAME = "scheduled_order_processor"

AWAITING_FUNDS = "awaiting_funds"


class Outcome:
    """Per-order result outcomes."""

    SUBMITTED = "submitted"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    REVERTED = "reverted"
    ERROR = "error"


@dataclass
class OrderResult:
    """Outcome of processing one order in a batch.

    Attributes:
        order_id: Order UUID.
        order_number: Human-facing order number.
        outcome: One of the Outcome values.
        status: Order status after processing.
        fulfillment_request_id: Provider request id on success.
        error_code: Provider or internal error code on failure.
        message: Detail for the cron log.
    """

    order_id: str
    order_number: str
    outcome: str
    status: str | None = None
    fulfillment_request_id: str | None = None
    error_code: str | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUBMITTED

    @property
    def failed(self) -> bool:
        return self.outcome in (
            Outcome.FAILED,
            Outcome.BLOCKED,
            Outcome.RETRY_SCHEDULED,
            Outcome.ERROR,
        )


@dataclass
class BatchSummary:
    """Aggregate of one batch run."""

    execution_id: str
    status: str
    results: list[OrderResult] = field(default_factory=list)
    missed_alerts: int = 0

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def skipped(self) -> int:
        return self.processed - self.succeeded - self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status,
            "orders_processed": self.processed,
            "orders_succeeded": self.succeeded,
            "orders_failed": self.failed,
            "orders_skipped": self.skipped,
            "missed_alerts": self.missed_alerts,
            "results": [asdict(r) for r in self.results],
        }


class BatchScheduler:
    """Cron-triggered orchestrator for due orders.

    Attributes:
        db: SQLAlchemy session (synchronous, used from async code).
        fulfillment: Provider client.
        payments: Payment capture gateway.
        validator: Security and rate gate.
        settings: Timing configuration.
    """

    def __init__(
        self,
        db: Session,
        fulfillment: FulfillmentClient,
        payments: PaymentGateway,
        validator: SecurityValidator | None = None,
        settings: SchedulerConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.fulfillment = fulfillment
        self.payments = payments
        self.validator = validator or SecurityValidator(db)
        self.settings = settings or SchedulerConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep

    # =========================================================================
    # Selection
    # =========================================================================

    def select_due_orders(self) -> list[Order]:
        """Orders due for submission, earliest delivery date first.

        Includes scheduled orders whose retry delay (if any) has elapsed, and
        requires_attention orders whose retry deadline has passed.
        """
        now = self._clock()
        cutoff = (now.date() + timedelta(days=self.settings.lead_days)).isoformat()
        now_iso = now.isoformat()

        retry_elapsed = or_(Order.next_retry_at.is_(None), Order.next_retry_at <= now_iso)
        return (
            self.db.query(Order)
            .filter(
                Order.scheduled_delivery_date.is_not(None),
                Order.scheduled_delivery_date <= cutoff,
                or_(Order.funding_status.is_(None), Order.funding_status != AWAITING_FUNDS),
                or_(
                    and_(Order.status == OrderStatus.scheduled.value, retry_elapsed),
                    and_(
                        Order.status == OrderStatus.requires_attention.value,
                        Order.next_retry_at.is_not(None),
                        Order.next_retry_at <= now_iso,
                    ),
                ),
            )
            .order_by(Order.scheduled_delivery_date.asc(), Order.created_at.asc())
            .all()
        )

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self) -> BatchSummary:
        """Process every due order and record a CronExecutionLog row.

        Returns:
            BatchSummary of the run.

        Raises:
            Exception: Only for failures outside per-order processing (e.g.
                the selection query); the log row is marked failed first.
        """
        log = CronExecutionLog(
            cron_name=CRON_NAME,
            status=CronRunStatus.running.value,
            started_at=utc_now_iso(),
        )
        self.db.add(log)
        self.db.commit()
        summary = BatchSummary(execution_id=log.id, status=CronRunStatus.running.value)

        try:
            orders = self.select_due_orders()
            logger.info("Batch %s: %d order(s) due", log.id, len(orders))

            for index, order in enumerate(orders):
                summary.results.append(await self.process_order(order))
                if index < len(orders) - 1:
                    await self._sleep(self.settings.inter_order_delay_seconds)

            summary.missed_alerts = len(detect_missed_orders(self.db, self._clock().date()))
            summary.status = CronRunStatus.completed.value
            self._finalize_log(log, summary)
        except Exception as e:
            logger.exception("Batch %s aborted", log.id)
            self.db.rollback()
            summary.status = CronRunStatus.failed.value
            self._finalize_log(log, summary, error=str(e))
            raise

        logger.info(
            "Batch %s finished: processed=%d succeeded=%d failed=%d skipped=%d",
            log.id,
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.skipped,
        )
        return summary

    def _finalize_log(
        self,
        log: CronExecutionLog,
        summary: BatchSummary,
        error: str | None = None,
    ) -> None:
        log.status = summary.status
        log.completed_at = utc_now_iso()
        log.orders_processed = summary.processed
        log.orders_succeeded = summary.succeeded
        log.orders_failed = summary.failed
        log.orders_skipped = summary.skipped
        log.results_json = json.dumps([asdict(r) for r in summary.results])
        log.error_message = sanitize_error_message(error)
        self.db.commit()

    # =========================================================================
    # Per-order processing
    # =========================================================================

    async def process_order(self, order: Order) -> OrderResult:
        """Run one order through gate, lock, capture and submission.

        Never raises. Unexpected exceptions revert the order to scheduled
        with a short delay and no retry increment.
        """
        order_id = order.id
        order_number = order.order_number
        try:
            return await self._process(order)
        except Exception as e:
            logger.exception("Unexpected error processing order %s", order_id)
            self.db.rollback()
            try:
                self._revert_after_system_error(order_id, e)
            except Exception:
                logger.exception("Could not revert order %s after system error", order_id)
                self.db.rollback()
            return OrderResult(
                order_id=order_id,
                order_number=order_number,
                outcome=Outcome.ERROR,
                status=OrderStatus.scheduled.value,
                error_code="system_error",
                message=sanitize_error_message(str(e), 500),
            )

    async def _process(self, order: Order) -> OrderResult:
        if order.status not in (
            OrderStatus.scheduled.value,
            OrderStatus.requires_attention.value,
        ):
            return self._result(order, Outcome.SKIPPED, message=f"Order is '{order.status}'")
        from_status = OrderStatus(order.status)
        native_retry = self._wants_native_retry(order)

        # 1. Security gate
        check = self.validator.validate(
            user_id=order.user_id,
            order_id=order.id,
            order_amount_cents=order.total_amount_cents,
            is_scheduled=True,
            scheduled_date=order.scheduled_delivery_date,
            retry_count=order.retry_count,
        )
        if check.blocked:
            return self._block(order, from_status, check.reason)
        for warning in check.warnings:
            logger.warning("Order %s security warning: %s", order.id, warning)

        # 2. Claim
        if not compare_and_swap(self.db, order.id, from_status, OrderStatus.processing):
            return self._result(order, Outcome.SKIPPED, message="Already claimed by another run")

        # 3. Payment
        reverted = await self._ensure_payment(order)
        if reverted is not None:
            return reverted

        # 4-5. Token and submission
        try:
            if native_retry:
                submitted = await self.fulfillment.retry_order(order.fulfillment_request_id)
            else:
                order.webhook_token = secrets.token_urlsafe(32)
                self.db.commit()
                payload = self.fulfillment.build_order_payload(
                    order, retry_attempt=order.retry_count
                )
                submitted = await self.fulfillment.submit_order(payload)
        except FulfillmentProviderError as e:
            logger.warning("Provider rejected order %s: %s", order.id, e)
            self.validator.track_failure(order.user_id)
            return self._handle_provider_failure(order, e)

        # 6. Success
        return self._record_submission(order, submitted)

    def _wants_native_retry(self, order: Order) -> bool:
        if order.status != OrderStatus.requires_attention.value:
            return False
        if not order.fulfillment_request_id:
            return False
        return classify(order.retry_reason, None).use_provider_native_retry

    def _block(self, order: Order, from_status: OrderStatus, reason: str) -> OrderResult:
        message = f"Blocked by security validation: {reason}"
        compare_and_swap(
            self.db,
            order.id,
            from_status,
            OrderStatus.failed,
            admin_message=message,
            error_classification="security_blocked",
            next_retry_at=None,
        )
        raise_alert(
            self.db,
            alert_type="order_blocked",
            severity=AlertSeverity.warning,
            order_id=order.id,
            user_id=order.user_id,
            requires_action=True,
            message=message,
        )
        return self._result(order, Outcome.BLOCKED, message=message)

    async def _ensure_payment(self, order: Order) -> OrderResult | None:
        """Capture payment if needed; return a result when the order was reverted."""
        if order.payment_status == PaymentStatus.succeeded.value:
            return None

        if (
            order.payment_status == PaymentStatus.payment_intent_created.value
            and order.payment_intent_id
        ):
            try:
                status = await self.payments.capture(order.payment_intent_id, order.id)
            except PaymentCaptureError as e:
                logger.warning("Payment capture failed for order %s: %s", order.id, e)
                return self._revert(order, Outcome.REVERTED, f"Payment capture failed: {e}")
            order.payment_status = status
            self.db.commit()
            return None

        return self._revert(
            order,
            Outcome.REVERTED,
            f"Payment status '{order.payment_status}' is not capturable",
        )

    def _revert(self, order: Order, outcome: str, message: str) -> OrderResult:
        compare_and_swap(self.db, order.id, OrderStatus.processing, OrderStatus.scheduled)
        return self._result(order, outcome, message=message)

    def _record_submission(self, order: Order, submitted: SubmitResult) -> OrderResult:
        # retry_count was bumped when the retry was scheduled
        order.fulfillment_request_id = submitted.request_id
        order.next_retry_at = None
        order.error_classification = None
        order.admin_message = None
        merge_notes(order, provider_status="submitted")
        self.db.commit()

        self.validator.track_success(order.user_id, order.id, order.total_amount_cents)
        notify_order(
            self.db,
            order,
            NotificationType.order_submitted,
            template_variables={
                "scheduled_delivery_date": order.scheduled_delivery_date,
            },
            dedupe_key=f"{order.id}:submitted:{submitted.request_id}",
            to_purchaser=True,
        )
        logger.info("Order %s submitted as %s", order.id, submitted.request_id)
        return self._result(
            order,
            Outcome.SUBMITTED,
            fulfillment_request_id=submitted.request_id,
        )

    def _handle_provider_failure(
        self,
        order: Order,
        error: FulfillmentProviderError,
    ) -> OrderResult:
        classification = classify(error.code, error.message)
        now = self._clock()

        if classification.should_retry and order.retry_count < classification.max_retries:
            target = (
                OrderStatus.requires_attention
                if classification.use_provider_native_retry and order.fulfillment_request_id
                else OrderStatus.scheduled
            )
            compare_and_swap(
                self.db,
                order.id,
                OrderStatus.processing,
                target,
                retry_count=order.retry_count + 1,
                retry_reason=error.code,
                next_retry_at=(now + timedelta(seconds=classification.retry_delay_seconds)).isoformat(),
                error_classification=classification.type.value,
                admin_message=classification.admin_message,
            )
            if classification.requires_admin_intervention:
                self._alert(order, classification, error.code)
            return self._result(
                order,
                Outcome.RETRY_SCHEDULED,
                error_code=error.code,
                message=classification.admin_message,
            )

        exhausted = classification.should_retry
        compare_and_swap(
            self.db,
            order.id,
            OrderStatus.processing,
            OrderStatus.failed,
            retry_reason=error.code,
            next_retry_at=None,
            error_classification=classification.type.value,
            admin_message=classification.admin_message,
        )
        if classification.requires_admin_intervention or exhausted:
            self._alert(order, classification, error.code, exhausted=exhausted)
        notify_order(
            self.db,
            order,
            NotificationType.order_failed,
            template_variables={"message": classification.user_friendly_message},
            dedupe_key=f"{order.id}:failed:{order.retry_count}:{error.code}",
            to_purchaser=True,
        )
        return self._result(
            order,
            Outcome.FAILED,
            error_code=error.code,
            message=classification.admin_message,
        )

    def _alert(
        self,
        order: Order,
        classification: Classification,
        code: str,
        exhausted: bool = False,
    ) -> None:
        alert_type = "retries_exhausted" if exhausted else f"fulfillment_{classification.type.value}"
        severity = AlertSeverity.critical if exhausted else AlertSeverity(classification.alert_level)
        raise_alert(
            self.db,
            alert_type=alert_type,
            severity=severity,
            order_id=order.id,
            user_id=order.user_id,
            requires_action=True,
            message=classification.admin_message,
            metadata={
                "error_code": code,
                "classification": classification.type.value,
                "retry_count": order.retry_count,
            },
        )

    def _revert_after_system_error(self, order_id: str, error: Exception) -> None:
        order = self.db.get(Order, order_id)
        if order is None:
            return
        retry_at = (
            self._clock() + timedelta(seconds=self.settings.system_error_retry_seconds)
        ).isoformat()
        admin_message = sanitize_error_message(
            f"System error during batch processing: {error}", 500
        )
        fields = {
            "next_retry_at": retry_at,
            "error_classification": ClassificationType.RETRYABLE_SYSTEM.value,
            "admin_message": admin_message,
        }
        if order.status == OrderStatus.processing.value:
            compare_and_swap(
                self.db, order_id, OrderStatus.processing, OrderStatus.scheduled, **fields
            )
        elif order.status in (OrderStatus.scheduled.value, OrderStatus.requires_attention.value):
            transition(self.db, order, order.status, **fields)

    def _result(self, order: Order, outcome: str, **kwargs: Any) -> OrderResult:
        self.db.refresh(order)
        return OrderResult(
            order_id=order.id,
            order_number=order.order_number,
            outcome=outcome,
            status=order.status,
            **kwargs,
        )
