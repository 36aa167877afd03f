# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import os


def setup_otel_from_env(use_console: bool = False) -> None:
    """Configure OpenTelemetry tracing for the facilitator from environment variables.

    Env vars:
    - OTEL_EXPORTER_OTLP_ENDPOINT (unset: no OTLP export)
    - OTEL_SERVICE_NAME (default x402-utxo-facilitator)
    - OTEL_CONSOLE_EXPORTER=1 to add console export
    """
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        BatchSpanProcessor,
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")  # Only enable if explicitly set
    service_name = os.getenv("OTEL_SERVICE_NAME", "x402-utxo-facilitator")
    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
    trace.set_tracer_provider(provider)

    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        except ImportError as e:  # pragma: no cover - import error path
            raise RuntimeError(
                "OTLP exporter not installed. Install extras: pip install x402-utxo-facilitator[otel]"
            ) from e
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    if use_console or os.getenv("OTEL_CONSOLE_EXPORTER", "0").lower() in {"1", "true", "yes"}:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
