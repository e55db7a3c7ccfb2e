"""
Prometheus metrics for the CLI gateway.

Defines the gateway's counters, gauges and histograms. Exposed in text
format on ``GET /metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Use standard Prometheus naming conventions: namespace_subsystem_name_unit
NAMESPACE = "cligateway"


# ============================================================================
# Generation Metrics
# ============================================================================

generations_total = Counter(
    f"{NAMESPACE}_generations_total",
    "Total number of finished tool executions",
    ["tool", "mode", "outcome"],  # outcome: "success" or an error code
)

generation_duration_seconds = Histogram(
    f"{NAMESPACE}_generation_duration_seconds",
    "Tool execution wall time in seconds",
    ["tool", "mode"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

processes_active = Gauge(
    f"{NAMESPACE}_processes_active",
    "Number of live spawn-mode tool processes",
)

streams_active = Gauge(
    f"{NAMESPACE}_streams_active",
    "Number of open server-sent event streams",
)


# ============================================================================
# Admission Metrics
# ============================================================================

rate_limited_total = Counter(
    f"{NAMESPACE}_rate_limited_total",
    "Total number of generation requests rejected by the rate window",
)


# ============================================================================
# Gemini Code Assist Metrics
# ============================================================================

gemini_retries_total = Counter(
    f"{NAMESPACE}_gemini_retries_total",
    "Total number of retried Code Assist calls",
    ["reason"],  # "rate_limited", "reauthenticate", "optional_field"
)

gemini_token_refresh_total = Counter(
    f"{NAMESPACE}_gemini_token_refresh_total",
    "Total number of OAuth token refresh attempts",
    ["status"],  # "success", "error", "invalidated"
)
