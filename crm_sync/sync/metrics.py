"""Prometheus metrics helpers for CRM sync."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_crm_sync_enabled_gauge = Gauge(
    "crm_sync_enabled",
    "Whether CRM synchronization is enabled (1) or disabled (0).",
)
_crm_records_counter = Counter(
    "crm_sync_records_total",
    "Records processed by CRM sync passes, by direction and outcome.",
    ["direction", "outcome"],
)
_crm_pass_duration = Histogram(
    "crm_sync_pass_duration_seconds",
    "Duration of CRM sync passes in seconds.",
    ["kind"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)
_crm_auth_counter = Counter(
    "crm_sync_provider_auth_total",
    "CRM provider token acquisitions by outcome.",
    ["outcome"],
)
_crm_webhook_counter = Counter(
    "crm_sync_webhooks_total",
    "Inbound CRM webhook deliveries by outcome.",
    ["outcome"],
)


def record_sync_enabled(enabled: bool) -> None:
    _crm_sync_enabled_gauge.set(1 if enabled else 0)


def record_sync_record(direction: str, outcome: str) -> None:
    """Increment the per-record outcome counter."""

    _crm_records_counter.labels(direction=direction, outcome=outcome).inc()


def record_pass_duration(kind: str, duration_seconds: float) -> None:
    _crm_pass_duration.labels(kind=kind).observe(duration_seconds)


def record_provider_auth(outcome: Literal["success", "failure"]) -> None:
    """Increment the provider authentication counter."""

    _crm_auth_counter.labels(outcome=outcome).inc()


def record_webhook(outcome: str) -> None:
    _crm_webhook_counter.labels(outcome=outcome).inc()
