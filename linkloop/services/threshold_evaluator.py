"""Threshold evaluation for glucose readings.

Pure functions: given a reading, the alert settings it should be judged
against and the recent reading history, decide whether an alert should
fire and at what severity. Nothing here touches the database.

Rule precedence: urgent_low > low > urgent_high > high > rapid change.
"""

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from linkloop.models.alert import ALERT_FAMILY, AlertFamily, AlertSeverity, AlertType

URGENT_LOW_OFFSET = 15  # mg/dL below the low threshold
URGENT_LOW_FLOOR = 40  # urgent_low never starts below this value
URGENT_HIGH_OFFSET = 70  # mg/dL above the high threshold
RAPID_LOOKBACK_MINUTES = 20
RAPID_MIN_SPACING_SECONDS = 60
DEFAULT_RAPID_THRESHOLD = 15  # mg/dL per 5 minutes
DEFAULT_HIGH_RUN_GAP_MINUTES = 15


@dataclass(frozen=True)
class ThresholdSettings:
    """Alert settings of one account (mg/dL, minutes)."""

    low: int = 70
    high: int = 180
    high_delay_minutes: int = 0

    @classmethod
    def from_account(cls, account) -> "ThresholdSettings":
        return cls(
            low=account.low_threshold,
            high=account.high_threshold,
            high_delay_minutes=account.high_alert_delay_minutes,
        )

    @property
    def urgent_low_floor(self) -> int:
        return max(self.low - URGENT_LOW_OFFSET, URGENT_LOW_FLOOR)

    @property
    def urgent_high_floor(self) -> int:
        return self.high + URGENT_HIGH_OFFSET


@dataclass(frozen=True)
class ReadingPoint:
    """The parts of a reading the evaluator needs."""

    value: int
    timestamp: datetime

    @classmethod
    def from_reading(cls, reading) -> "ReadingPoint":
        return cls(value=reading.value, timestamp=reading.reading_timestamp)


@dataclass(frozen=True)
class AlertDecision:
    """Outcome of an evaluation that should produce (or escalate) an alert."""

    alert_type: AlertType
    severity: AlertSeverity
    value: int | None

    @property
    def family(self) -> AlertFamily:
        return ALERT_FAMILY[self.alert_type]


def is_in_range(value: int, settings: ThresholdSettings) -> bool:
    """True when the value is inside [low, high]."""
    return settings.low <= value <= settings.high


def high_run_minutes(
    reading: ReadingPoint,
    history: Sequence[ReadingPoint],
    settings: ThresholdSettings,
    gap_minutes: int = DEFAULT_HIGH_RUN_GAP_MINUTES,
) -> float:
    """Minutes the current run of readings above ``settings.high`` has lasted.

    The run ends at ``reading`` and extends backwards through consecutive
    history readings above the threshold. A reading at or below the
    threshold, or a gap longer than ``gap_minutes``, breaks the run.
    """
    if reading.value <= settings.high:
        return 0.0

    gap = timedelta(minutes=gap_minutes)
    earlier = sorted(
        (p for p in history if p.timestamp < reading.timestamp),
        key=lambda p: p.timestamp,
        reverse=True,
    )

    run_start = reading.timestamp
    for point in earlier:
        if run_start - point.timestamp > gap:
            break
        if point.value <= settings.high:
            break
        run_start = point.timestamp

    return (reading.timestamp - run_start).total_seconds() / 60


def classify_rate(
    reading: ReadingPoint,
    history: Sequence[ReadingPoint],
    threshold: int = DEFAULT_RAPID_THRESHOLD,
) -> AlertDecision | None:
    """Classify rapid rise/drop from the reading and the one before it.

    The previous reading must be between one and twenty minutes older.
    The slope is normalised to mg/dL per 5 minutes.
    """
    previous = max(
        (p for p in history if p.timestamp < reading.timestamp),
        key=lambda p: p.timestamp,
        default=None,
    )
    if previous is None:
        return None

    elapsed = (reading.timestamp - previous.timestamp).total_seconds()
    if elapsed < RAPID_MIN_SPACING_SECONDS or elapsed > RAPID_LOOKBACK_MINUTES * 60:
        return None

    per_five_minutes = (reading.value - previous.value) / (elapsed / 300)
    if per_five_minutes >= threshold:
        return AlertDecision(AlertType.RAPID_RISE, AlertSeverity.URGENT, reading.value)
    if per_five_minutes <= -threshold:
        return AlertDecision(AlertType.RAPID_DROP, AlertSeverity.URGENT, reading.value)
    return None


def evaluate_reading(
    reading: ReadingPoint,
    settings: ThresholdSettings,
    history: Sequence[ReadingPoint],
    rapid_threshold: int = DEFAULT_RAPID_THRESHOLD,
    high_run_gap_minutes: int = DEFAULT_HIGH_RUN_GAP_MINUTES,
) -> AlertDecision | None:
    """Decide whether a reading should raise an alert.

    Args:
        reading: The newly stored reading
        settings: Thresholds and high delay to judge against
        history: Recent earlier readings for the same owner (any order)
        rapid_threshold: mg/dL per 5 minutes that counts as rapid change
        high_run_gap_minutes: Gap between readings that breaks a high run

    Returns:
        AlertDecision, or None when nothing should fire
    """
    value = reading.value

    if value < settings.urgent_low_floor:
        return AlertDecision(AlertType.URGENT_LOW, AlertSeverity.CRITICAL, value)
    if value < settings.low:
        return AlertDecision(AlertType.LOW, AlertSeverity.WARNING, value)
    if value > settings.urgent_high_floor:
        return AlertDecision(AlertType.URGENT_HIGH, AlertSeverity.CRITICAL, value)
    if value > settings.high:
        run = high_run_minutes(reading, history, settings, high_run_gap_minutes)
        if run >= settings.high_delay_minutes:
            return AlertDecision(AlertType.HIGH, AlertSeverity.WARNING, value)

    return classify_rate(reading, history, rapid_threshold)


def evaluate_staleness(
    last_seen_at: datetime | None,
    now: datetime,
    window_minutes: int,
) -> AlertDecision | None:
    """no_data when nothing has been seen for longer than the window.

    ``last_seen_at`` is the newest reading time, or when the feed was
    connected if no reading has arrived yet.
    """
    if last_seen_at is None:
        return None
    if now - last_seen_at > timedelta(minutes=window_minutes):
        return AlertDecision(AlertType.NO_DATA, AlertSeverity.WARNING, None)
    return None


# ---------------------------------------------------------------------------
# Per-member evaluation contexts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluationContext:
    """One distinct threshold configuration and the accounts that use it."""

    settings: ThresholdSettings
    account_ids: tuple[uuid.UUID, ...]


def build_contexts(accounts: Iterable) -> list[EvaluationContext]:
    """Group accounts by their alert settings.

    Each distinct (low, high, delay) combination is evaluated once no
    matter how many members share it.
    """
    grouped: dict[ThresholdSettings, list[uuid.UUID]] = {}
    for account in accounts:
        grouped.setdefault(ThresholdSettings.from_account(account), []).append(
            account.id
        )
    return [
        EvaluationContext(settings=key, account_ids=tuple(ids))
        for key, ids in grouped.items()
    ]


def decision_applies(
    decision: AlertDecision,
    settings: ThresholdSettings,
    reading: ReadingPoint | None,
    history: Sequence[ReadingPoint],
    high_run_gap_minutes: int = DEFAULT_HIGH_RUN_GAP_MINUTES,
) -> bool:
    """Whether an owner-level decision also crosses another account's settings.

    Critical, rapid and no_data alerts always apply. Standard lows apply when
    the value is below the account's low threshold; standard highs when the
    value is above its high threshold for at least its delay.
    """
    if decision.alert_type == AlertType.LOW:
        return decision.value is not None and decision.value < settings.low
    if decision.alert_type == AlertType.HIGH:
        if decision.value is None or decision.value <= settings.high:
            return False
        if settings.high_delay_minutes == 0:
            return True
        if reading is None:
            return False
        run = high_run_minutes(reading, history, settings, high_run_gap_minutes)
        return run >= settings.high_delay_minutes
    return True


def matching_account_ids(
    decision: AlertDecision,
    contexts: Iterable[EvaluationContext],
    reading: ReadingPoint | None,
    history: Sequence[ReadingPoint],
    high_run_gap_minutes: int = DEFAULT_HIGH_RUN_GAP_MINUTES,
) -> set[uuid.UUID]:
    """Account ids whose own settings are crossed by the decision."""
    matched: set[uuid.UUID] = set()
    for context in contexts:
        if decision_applies(
            decision, context.settings, reading, history, high_run_gap_minutes
        ):
            matched.update(context.account_ids)
    return matched
