"""
OpenTelemetry availability detection for envclone.

OpenTelemetry is an optional dependency (``pip install envclone[telemetry]``).
This module is the single place that attempts the import; everything else
checks ``OTEL_AVAILABLE``.
"""

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import trace  # noqa: F401

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
