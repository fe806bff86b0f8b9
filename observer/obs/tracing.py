import logging

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

from observer.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

tracer = trace.get_tracer("observer")


def setup_tracing(settings: Settings | None = None) -> bool:
    # console exporter for local debugging; without a provider spans are no-ops
    s = settings or get_settings()
    if not s.trace_enabled:
        return False
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    return True


def setup_logging(settings: Settings | None = None):
    # the terminal owns stdout, so logs go to a file unless none is configured
    s = settings or get_settings()
    kwargs = {"filename": s.log_file, "encoding": "utf-8"} if s.log_file else {}
    logging.basicConfig(
        level=getattr(logging, s.log_level),
        format=LOG_FORMAT,
        force=True,
        **kwargs,
    )
