"""Prometheus exporter helpers."""

from __future__ import annotations

from prometheus_client import Counter, Gauge


edit_operations_total = Counter(
    "pixelme_edit_operations_total",
    "Destructive edit operations by kind and outcome.",
    ["operation", "outcome"],
)

style_conversions_total = Counter(
    "pixelme_style_conversions_total",
    "Style conversion requests by outcome.",
    ["outcome"],
)

rate_limit_rejections_total = Counter(
    "pixelme_rate_limit_rejections_total",
    "Number of conversions rejected by the rate-limit gate.",
)

active_editor_sessions = Gauge(
    "pixelme_active_editor_sessions",
    "Number of sessions with an open mask editor.",
)
