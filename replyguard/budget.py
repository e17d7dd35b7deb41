"""
Budget monitoring for replyguard.

Billed operations add cents to the owner's record for the current UTC day.
A periodic sweep compares each record with its ceiling, sends a threshold
alert at 80% and, at 100%, flips the owner's feature kill switch and sends
an "exceeded" alert. The threshold alert fires at most once per owner per
day; the exceeded alert fires whenever the sweep flips the kill switch.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Callable, Optional

from replyguard import config
from replyguard.models import CostUsageRecord, day_period_id
from replyguard.storage import GuardrailStore
from replyguard.validation import validate_cost_cents

logger = logging.getLogger(__name__)

DISABLED_REASON_BUDGET = "budget_exceeded"


@dataclass
class SweepReport:
    """Summary of one budget sweep."""
    period_id: str
    owners_checked: int = 0
    alerts_sent: int = 0
    features_disabled: int = 0
    failures: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "period_id": self.period_id,
            "owners_checked": self.owners_checked,
            "alerts_sent": self.alerts_sent,
            "features_disabled": self.features_disabled,
            "failures": list(self.failures),
            "duration_ms": self.duration_ms,
        }


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


class BudgetMonitor:
    """
    Daily cost ceilings per owner.

    Example:
        ```python
        monitor = BudgetMonitor(store, notifier=notifier)
        monitor.record_cost("owner_1", operation="faq_detection")
        report = monitor.sweep()
        print(report.alerts_sent, report.features_disabled)
        ```
    """

    def __init__(
        self,
        store: GuardrailStore,
        notifier=None,
        default_budget_cents: int = config.DEFAULT_DAILY_BUDGET_CENTS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize budget monitor.

        Args:
            store: Guardrail store holding cost records and feature flags
            notifier: Optional object with notify_owner(owner_id, title, body, data)
            default_budget_cents: Daily ceiling for owners without an explicit one
            clock: Returns the current UTC time. Defaults to datetime.now(UTC).
        """
        validate_cost_cents(default_budget_cents)
        self.store = store
        self.notifier = notifier
        self.default_budget_cents = default_budget_cents
        self._clock = clock or (lambda: datetime.now(UTC))

    def current_period(self) -> str:
        return day_period_id(self._clock())

    # =========================================================================
    # Recording
    # =========================================================================

    def record_cost(
        self,
        owner_id: str,
        cents: Optional[int] = None,
        operation: str = "faq_detection",
        budget_limit_cents: Optional[int] = None,
    ) -> CostUsageRecord:
        """
        Add a billed operation to the owner's record for today.

        Args:
            owner_id: Owner identifier
            cents: Amount to add. Defaults to the configured charge for `operation`.
            operation: Operation kind, tracked in cost_by_operation
            budget_limit_cents: Ceiling to store on the record. Keeps the
                existing ceiling (or the default) when omitted.

        Returns:
            The updated CostUsageRecord
        """
        if cents is None:
            cents = config.get_operation_costs().get(operation, 0)
        validate_cost_cents(cents)

        period_id = self.current_period()
        if budget_limit_cents is None:
            existing = self.store.get_cost_record(owner_id, period_id)
            budget_limit_cents = existing.budget_limit_cents if existing else self.default_budget_cents
        else:
            validate_cost_cents(budget_limit_cents)

        record = self.store.add_cost(owner_id, period_id, cents, budget_limit_cents, operation)
        logger.debug(
            "Recorded %d cents for owner=%s operation=%s (%.1f%% of %d)",
            cents, owner_id, operation, record.used_percent, record.budget_limit_cents,
        )
        return record

    def get_usage(self, owner_id: str) -> Optional[CostUsageRecord]:
        return self.store.get_cost_record(owner_id, self.current_period())

    def is_features_disabled(self, owner_id: str) -> bool:
        return self.store.get_feature_flags(owner_id).features_disabled

    # =========================================================================
    # Sweep
    # =========================================================================

    def sweep(self, period_id: Optional[str] = None) -> SweepReport:
        """
        Check every owner with a cost record in the period.

        A failure for one owner is logged and recorded in the report; the
        remaining owners are still checked.
        """
        started = time.monotonic()
        period_id = period_id or self.current_period()
        report = SweepReport(period_id=period_id)

        for record in self.store.list_cost_records(period_id):
            report.owners_checked += 1
            try:
                alerts, disabled = self.check_owner(record)
            except Exception as e:
                logger.exception("Budget check failed for owner=%s: %s", record.owner_id, e)
                report.failures.append(record.owner_id)
                continue
            report.alerts_sent += alerts
            report.features_disabled += disabled

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Budget sweep %s completed in %dms: %d owners checked, %d alerts sent, "
            "%d features disabled, %d failures",
            period_id, report.duration_ms, report.owners_checked, report.alerts_sent,
            report.features_disabled, len(report.failures),
        )
        return report

    def check_owner(self, record: CostUsageRecord) -> tuple[int, int]:
        """
        Apply both thresholds to one record.

        Returns:
            (alerts sent, features disabled) for this owner
        """
        alerts = 0
        disabled = 0
        owner_id, period_id = record.owner_id, record.period_id

        if (
            record.used_percent >= config.BUDGET_ALERT_PERCENT
            and not record.alert_sent
            and self.store.mark_alert_sent(owner_id, period_id)
        ):
            logger.info(
                "Owner %s reached %.1f%% of daily budget, sending alert",
                owner_id, record.used_percent,
            )
            self._send_alert(owner_id, "threshold", record)
            alerts += 1

        if record.used_percent >= config.BUDGET_EXCEEDED_PERCENT:
            if not record.exceeded:
                self.store.mark_exceeded(owner_id, period_id)
            # Gated on the owner's flags, not the record.
            if (
                not self.store.get_feature_flags(owner_id).features_disabled
                and self.store.disable_features(owner_id, DISABLED_REASON_BUDGET, self._clock())
            ):
                logger.warning("Owner %s exceeded daily budget, automated features disabled", owner_id)
                self._send_alert(owner_id, "exceeded", record)
                alerts += 1
                disabled += 1

        return alerts, disabled

    def _send_alert(self, owner_id: str, alert_type: str, record: CostUsageRecord) -> None:
        if self.notifier is None:
            return
        if alert_type == "threshold":
            title = "AI Budget Alert"
            body = (
                f"You've used {record.used_percent:.0f}% ({_dollars(record.total_cost_cents)}) "
                f"of your daily AI budget ({_dollars(record.budget_limit_cents)})."
            )
        else:
            title = "AI Budget Exceeded"
            body = (
                f"You've reached your daily AI budget limit ({_dollars(record.budget_limit_cents)}). "
                f"AI features are temporarily disabled until tomorrow."
            )
        data = {
            "type": "budget_alert",
            "alert_type": alert_type,
            "total_cost_cents": record.total_cost_cents,
            "budget_limit_cents": record.budget_limit_cents,
            "used_percent": record.used_percent,
        }
        try:
            self.notifier.notify_owner(owner_id, title, body, data)
        except Exception as e:
            logger.error("Failed to send %s budget alert to owner=%s: %s", alert_type, owner_id, e)
