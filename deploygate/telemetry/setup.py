"""OpenTelemetry tracer provider setup."""

import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from .. import __version__
from ..config import Settings

logger = logging.getLogger(__name__)


def build_resource(settings: Settings) -> Resource:
    """Describe this process and the adapters it serves."""
    return Resource.create({
        "service.name": settings.telemetry.service_name,
        "service.version": __version__,
        "dms.adapters": ",".join(dict.fromkeys(settings.adapters)),
        "dms.default_adapter": settings.default_adapter,
    })


def setup_telemetry(settings: Settings) -> Optional[TracerProvider]:
    """
    Install a global tracer provider exporting spans over OTLP/gRPC.

    Returns the provider so the caller can flush it on shutdown, or None when
    tracing is disabled. Adapter spans are still created without a provider;
    they are simply not recorded.
    """
    telemetry = settings.telemetry
    if not telemetry.enabled:
        logger.info("OpenTelemetry disabled")
        return None

    provider = TracerProvider(
        resource=build_resource(settings),
        sampler=ParentBased(TraceIdRatioBased(telemetry.sample_ratio)),
    )
    try:
        exporter = OTLPSpanExporter(endpoint=telemetry.exporter_endpoint, insecure=telemetry.insecure)
    except Exception as e:  # noqa: BLE001
        logger.warning("Failed to configure OTLP exporter, spans stay local: %s", e)
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info(
            "OpenTelemetry exporting to %s (sample ratio %.2f)",
            telemetry.exporter_endpoint, telemetry.sample_ratio,
        )

    trace.set_tracer_provider(provider)
    return provider
