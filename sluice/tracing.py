"""OpenTelemetry spans around engine operations.

Without a configured SDK the OpenTelemetry API hands out non-recording spans,
so tracing costs next to nothing when nobody collects it.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry import trace
from opentelemetry.trace import StatusCode

from sluice import __version__


class SluiceTracer:
    def __init__(self, service: str = "sluice", enable: bool = True) -> None:
        self.service: str = service
        self.enabled: bool = enable

    @contextmanager
    def span(
        self, name: str, attributes: dict[str, Any] | None = None
    ) -> Generator[Any, None, None]:
        """Create a span; yields None when tracing is disabled."""
        if not self.enabled:
            yield None
            return

        tracer = trace.get_tracer("sluice", __version__)
        attrs: dict[str, Any] = {"sluice.service": self.service}
        if attributes:
            attrs.update(attributes)
        with tracer.start_as_current_span(name, attributes=attrs) as span:
            try:
                yield span
            except Exception as e:
                span.set_status(StatusCode.ERROR, str(e))
                span.record_exception(e)
                raise


class _NoopTracer:
    @contextmanager
    def span(
        self, name: str, attributes: dict[str, Any] | None = None
    ) -> Generator[None, None, None]:
        yield
