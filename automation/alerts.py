"""Alerting helpers for flaky test findings.

Alerts are dispatched to every registered notification channel (for example
Slack and email).  Two triggers exist: a single failing test whose predicted
failure probability is high, and the end-of-suite recommendation digest.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from analytics.recommendations import ENVIRONMENT, INVESTIGATE, QUARANTINE, Recommendation

logger = logging.getLogger(__name__)

DIGEST_ORDER = (QUARANTINE, INVESTIGATE, ENVIRONMENT)

# Slack attachment colour per alert kind.
ALERT_COLORS: Dict[str, str] = {
    "failure": "#dc3545",
    "digest": "#fd7e14",
}


@dataclass(frozen=True)
class FlakinessAlert:
    """One notification about flaky tests."""

    kind: str
    subject: str
    body: str
    test_ids: Sequence[str] = ()
    failure_probability: Optional[float] = None
    counts: Dict[str, int] = field(default_factory=dict)


class Notifier(Protocol):
    """Notification channel for flakiness alerts."""

    def send(self, alert: FlakinessAlert) -> None:
        ...


@dataclass
class SlackNotifier:
    """Posts alerts to a Slack webhook as an attachment with one field per fact."""

    webhook: Callable[[str], None]
    channel: str
    username: str = "flakiness-analytics"

    def send(self, alert: FlakinessAlert) -> None:
        fields: List[Dict[str, object]] = []
        if alert.failure_probability is not None:
            fields.append(
                {"title": "Failure probability", "value": f"{alert.failure_probability:.1%}", "short": True}
            )
        for category, count in alert.counts.items():
            fields.append({"title": category.capitalize(), "value": str(count), "short": True})
        if alert.test_ids:
            fields.append({"title": "Tests", "value": "\n".join(alert.test_ids), "short": False})

        payload = {
            "channel": self.channel,
            "username": self.username,
            "text": f"*{alert.subject}*",
            "attachments": [
                {
                    "color": ALERT_COLORS.get(alert.kind, "#6c757d"),
                    "text": alert.body,
                    "fields": fields,
                }
            ],
        }
        self.webhook(json.dumps(payload))


@dataclass
class EmailNotifier:
    """Hands a plain-text message for each alert to an injected transport."""

    transport: Callable[[dict], None]
    recipients: Sequence[str]

    def send(self, alert: FlakinessAlert) -> None:
        lines = [alert.body]
        if alert.test_ids:
            lines.append("")
            lines.append("Affected tests:")
            lines.extend(f"  {test_id}" for test_id in alert.test_ids)
        self.transport({"to": list(self.recipients), "subject": alert.subject, "body": "\n".join(lines)})


@dataclass(frozen=True)
class ThresholdConfig:
    """Thresholds for flakiness alerting."""

    max_failure_probability: float = 0.5
    alert_on_quarantine: bool = True
    alert_on_investigation: bool = True
    alert_on_environment: bool = False


@dataclass
class AlertingEngine:
    """Evaluate findings and emit alerts when thresholds are breached."""

    notifiers: Sequence[Notifier]
    threshold: ThresholdConfig = field(default_factory=ThresholdConfig)

    def _notify(self, alert: FlakinessAlert) -> None:
        logger.info("Sending alert %r to %d channel(s)", alert.subject, len(self.notifiers))
        for notifier in self.notifiers:
            notifier.send(alert)

    def on_failure(self, test_id: str, probability: float) -> Optional[FlakinessAlert]:
        """Alert when a failing test is likely to keep failing.

        Returns the alert when one was sent.
        """

        if probability <= self.threshold.max_failure_probability:
            return None
        alert = FlakinessAlert(
            kind="failure",
            subject=f"Flakiness alert: {test_id}",
            body=(
                f"High failure probability detected for {test_id}: {probability:.1%}"
                f" (threshold {self.threshold.max_failure_probability:.1%})."
            ),
            test_ids=(test_id,),
            failure_probability=probability,
        )
        self._notify(alert)
        return alert

    def run(self, recommendations: Sequence[Recommendation]) -> Optional[FlakinessAlert]:
        """Send one digest covering the recommendations that are enabled."""

        enabled = {
            QUARANTINE: self.threshold.alert_on_quarantine,
            INVESTIGATE: self.threshold.alert_on_investigation,
            ENVIRONMENT: self.threshold.alert_on_environment,
        }
        selected = [item for item in recommendations if enabled.get(item.category, False)]
        if not selected:
            return None

        counts: Dict[str, int] = {}
        for category in DIGEST_ORDER:
            count = sum(len(item.tests) for item in selected if item.category == category)
            if count:
                counts[category] = count

        test_ids: List[str] = []
        for item in selected:
            test_ids.extend(test_id for test_id in item.tests if test_id not in test_ids)

        alert = FlakinessAlert(
            kind="digest",
            subject="Flaky tests | " + " | ".join(f"{name}: {count}" for name, count in counts.items()),
            body="\n".join(f"- {item.message}" for item in selected),
            test_ids=tuple(test_ids),
            counts=counts,
        )
        self._notify(alert)
        return alert
