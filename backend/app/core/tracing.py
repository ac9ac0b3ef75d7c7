"""
OpenTelemetry tracing configuration and utilities for the knowledge service.

This module sets up distributed tracing for the storage critical path:
- Knowledge file upload and extraction
- Knowledge file deletion (including the physical cleanup sweep)
- Context assembly for agents

Agent API keys and other secrets are masked to prevent exposure in traces.
"""

import os
import re
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

SECRET_KEYS = ("api_key", "token", "secret", "password", "credential")


def setup_tracing(service_name: str = "agent-knowledge-service") -> TracerProvider:
    """
    Initialize OpenTelemetry tracing with OTLP exporter.

    Environment variables:
    - OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
    - OTEL_TRACES_EXPORTER: "otlp", "console", or "none" (default: console)

    Args:
        service_name: Name of the service for trace identification

    Returns:
        Configured TracerProvider
    """
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": "0.1.0",
        }
    )

    provider = TracerProvider(resource=resource)

    exporter_type = os.getenv("OTEL_TRACES_EXPORTER", "console").lower()

    if exporter_type == "otlp":
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    elif exporter_type == "console":
        exporter = ConsoleSpanExporter()
        provider.add_span_processor(BatchSpanProcessor(exporter))
    # If "none", no exporter is added

    trace.set_tracer_provider(provider)
    return provider


def get_tracer(name: str = __name__) -> trace.Tracer:
    """Get a tracer instance for creating spans."""
    return trace.get_tracer(name)


def mask_secret(value: str | None) -> str:
    """
    Mask a secret (API key, token) for safe inclusion in traces.

    Shows first 4 and last 4 characters, masks the rest.
    """
    if not value:
        return "<none>"

    if len(value) <= 12:
        return "***"

    return f"{value[:4]}...{value[-4:]}"


def truncate_text(content: str | None, max_length: int = 100) -> str:
    """Shorten free text (names, descriptions) for span attributes."""
    if not content:
        return "<empty>"

    if len(content) > max_length:
        content = content[:max_length] + "..."

    # Long opaque strings are most likely credentials
    return re.sub(r"[A-Za-z0-9_-]{40,}", "***TOKEN***", content)


def safe_span_attributes(**kwargs: Any) -> dict[str, Any]:
    """
    Create span attributes with automatic sanitization.

    - api_key, token, secret, password, credential -> masked
    - description, content, context -> truncated
    - lists/tuples of primitives are kept as sequences (OpenTelemetry supports them)
    - None values are dropped
    """
    sanitized: dict[str, Any] = {}

    for key, value in kwargs.items():
        if value is None:
            continue

        lowered = key.lower()
        if any(secret in lowered for secret in SECRET_KEYS):
            sanitized[key] = mask_secret(str(value))
        elif any(text_key in lowered for text_key in ("description", "content", "context")):
            sanitized[key] = truncate_text(str(value))
        elif isinstance(value, (str, int, float, bool)):
            sanitized[key] = value
        elif isinstance(value, (list, tuple)) and all(isinstance(v, (str, int, float, bool)) for v in value):
            sanitized[key] = list(value)
        else:
            sanitized[key] = str(value)

    return sanitized
