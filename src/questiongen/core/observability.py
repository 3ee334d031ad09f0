"""Tracing setup for the generation pipeline.

Spans are created through the OpenTelemetry API, which is a no-op until an
SDK is installed. ``configure_observability()`` wires Azure Monitor when the
deployment asks for it; everything else only ever calls ``get_tracer()``.

PII and Sensitive Data Guidance:
--------------------------------
- NEVER put prompt text, model output, or questionnaire answers in span attributes
- Use the request id (correlation id) to link traces with structured logs
- Safe attributes: provider name, attempt number, outcome, durations, sizes
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache

from opentelemetry import trace


logger = logging.getLogger(__name__)

_ENV_ENABLE_OBSERVABILITY = "ENABLE_OBSERVABILITY"
_ENV_APP_INSIGHTS_CONN_STRING = "APPLICATIONINSIGHTS_CONNECTION_STRING"
_ENV_OTEL_SERVICE_NAME = "OTEL_SERVICE_NAME"

_DEFAULT_SERVICE_NAME = "questiongen"


def _is_observability_enabled() -> bool:
    """Check if observability is enabled via environment variable.

    Returns True if ENABLE_OBSERVABILITY is set to a truthy value
    (e.g., "true", "1", "yes"). Defaults to False if not set.
    """
    value = os.getenv(_ENV_ENABLE_OBSERVABILITY, "false").lower()
    return value in {"true", "1", "yes", "on"}


@lru_cache
def configure_observability() -> bool:
    """Export spans to Azure Monitor Application Insights.

    Call once at process startup. Requires the ``azure`` extra.

    Returns:
        True if an exporter was configured, False otherwise.
    """
    if not _is_observability_enabled():
        logger.info(
            "Observability disabled. Set %s=true to enable Azure Monitor.",
            _ENV_ENABLE_OBSERVABILITY,
        )
        return False

    connection_string = os.getenv(_ENV_APP_INSIGHTS_CONN_STRING)
    if not connection_string:
        logger.warning(
            "Observability enabled but %s not set. Skipping Azure Monitor setup.",
            _ENV_APP_INSIGHTS_CONN_STRING,
        )
        return False

    try:
        from azure.monitor.opentelemetry import configure_azure_monitor
    except ImportError:
        logger.warning(
            "azure-monitor-opentelemetry package not installed. "
            "Install with: pip install 'questiongen[azure]'"
        )
        return False

    service_name = os.getenv(_ENV_OTEL_SERVICE_NAME, _DEFAULT_SERVICE_NAME)
    os.environ.setdefault(_ENV_OTEL_SERVICE_NAME, service_name)
    try:
        configure_azure_monitor(connection_string=connection_string)
    except Exception as e:
        logger.exception("Failed to configure Azure Monitor observability: %s", e)
        return False

    logger.info("Azure Monitor observability configured for service '%s'", service_name)
    return True


def get_tracer(name: str) -> trace.Tracer:
    """Get an OpenTelemetry tracer for custom instrumentation.

    Example:
        tracer = get_tracer(__name__)

        with tracer.start_as_current_span("generation.attempt") as span:
            span.set_attribute("provider", "anthropic")

    WARNING: Never add user content or PII to span attributes!
    """
    return trace.get_tracer(name)
