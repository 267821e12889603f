"""
Expiry Classification — the one place that turns an expiry date into
days-until-expiry, a days-range bucket and a severity.

The scanner, the batch read model and the reports all call these helpers,
so bucket boundaries cannot drift between them.

Buckets (inclusive bounds):
  expired     days <= 0   (pseudo-bucket, not counted in days ranges)
  0-7 days    1..7        CRITICAL
  8-30 days   8..30       WARNING
  31-60 days  31..60      INFO
  61-90 days  61..90      INFO
  91+ days    91..        INFO
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime

EXPIRED_BUCKET = "expired"

# (label, upper bound inclusive); lower bound is the previous upper + 1
DAYS_RANGE_BUCKETS: tuple[tuple[str, int | None], ...] = (
    ("0-7 days", 7),
    ("8-30 days", 30),
    ("31-60 days", 60),
    ("61-90 days", 90),
    ("91+ days", None),
)
DAYS_RANGE_LABELS = tuple(label for label, _ in DAYS_RANGE_BUCKETS)

SEVERITY_THRESHOLDS = {
    "CRITICAL": 7,
    "WARNING": 30,
}
SEVERITIES = ("CRITICAL", "WARNING", "INFO")


@dataclass(frozen=True)
class ExpiryClassification:
    days_until_expiry: int
    bucket: str
    severity: str

    @property
    def is_expired(self) -> bool:
        return self.bucket == EXPIRED_BUCKET


def days_until_expiry(expiry_date: date, reference: date | datetime) -> int:
    """Whole days from ``reference`` to ``expiry_date``, rounded up."""
    if isinstance(reference, datetime):
        delta = datetime.combine(expiry_date, datetime.min.time()) - reference.replace(tzinfo=None)
        return math.ceil(delta.total_seconds() / 86400)
    return (expiry_date - reference).days


def bucket_for_days(days: int) -> str:
    if days <= 0:
        return EXPIRED_BUCKET
    for label, upper in DAYS_RANGE_BUCKETS:
        if upper is None or days <= upper:
            return label
    return DAYS_RANGE_BUCKETS[-1][0]


def severity_for_days(days: int) -> str:
    """Three-tier severity. Already expired stock is always CRITICAL."""
    if days <= SEVERITY_THRESHOLDS["CRITICAL"]:
        return "CRITICAL"
    elif days <= SEVERITY_THRESHOLDS["WARNING"]:
        return "WARNING"
    return "INFO"


def classify_expiry(expiry_date: date, reference: date | datetime) -> ExpiryClassification:
    days = days_until_expiry(expiry_date, reference)
    return ExpiryClassification(
        days_until_expiry=days,
        bucket=bucket_for_days(days),
        severity=severity_for_days(days),
    )


def empty_bucket_counts() -> dict[str, int]:
    return {label: 0 for label in DAYS_RANGE_LABELS}


def empty_severity_counts() -> dict[str, int]:
    return {severity: 0 for severity in SEVERITIES}
