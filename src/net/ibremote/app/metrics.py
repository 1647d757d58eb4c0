"""
Metrics Abstraction Layer

A vendor-agnostic metrics interface with Telegraf/StatsD, OpenTelemetry and no-op
backends. Components record counters and timers through ``MetricsClient`` and never
depend on a particular backend.

Key Components:
- MetricsClient: Abstract interface for all metrics operations
- TelegrafCompatibilityClient: Wrapper around an aio-statsd TelegrafStatsdClient
- OTELMetricsClient: OpenTelemetry implementation
- NoOpMetricsClient: Used when metrics are disabled and in tests
- create_metrics_client: Factory selecting the backend from configuration
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

try:
    from opentelemetry import metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False

try:
    from aio_statsd import TelegrafStatsdClient
    TELEGRAF_AVAILABLE = True
except ImportError:
    TELEGRAF_AVAILABLE = False

logger = logging.getLogger(__name__)

TagDict = Optional[Dict[str, Any]]


class MetricsClient(ABC):
    """
    Abstract metrics client.

    Tags follow the StatsD style dictionary convention and are converted to attributes
    by backends that need them.
    """

    @abstractmethod
    def increment(
        self, name: str, value: Union[int, float] = 1, tag_dict: TagDict = None
    ) -> None:
        """Increment a counter metric by ``value``."""
        pass

    @abstractmethod
    def gauge(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        """Set a gauge metric to ``value``."""
        pass

    @abstractmethod
    def timer(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        """Record a duration, in seconds."""
        pass

    async def connect(self) -> None:
        """Open any network resources the backend needs."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Flush pending metrics and release resources."""
        pass


class TelegrafCompatibilityClient(MetricsClient):
    """Delegates to a TelegrafStatsdClient instance."""

    def __init__(self, telegraf_client: Any):
        if not TELEGRAF_AVAILABLE:
            raise ImportError(
                "TelegrafStatsdClient not available. Install with: pip install aio-statsd"
            )
        self.client = telegraf_client

    def increment(
        self, name: str, value: Union[int, float] = 1, tag_dict: TagDict = None
    ) -> None:
        self.client.increment(name, value, tag_dict=tag_dict or {})

    def gauge(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        self.client.gauge(name, value, tag_dict=tag_dict or {})

    def timer(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        self.client.timer(name, value, tag_dict=tag_dict or {})

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Error closing Telegraf client: {e}")


class OTELMetricsClient(MetricsClient):
    """
    OpenTelemetry metrics client.

    Instruments are created lazily on first use and cached by name. Timers map to
    histograms in seconds; gauges map to up-down counters.
    """

    def __init__(
        self,
        service_name: str = "ibremote",
        service_version: str = "1.0.0",
        exporter_endpoint: Optional[str] = None,
        export_interval_seconds: int = 30,
    ):
        if not OTEL_AVAILABLE:
            raise ImportError(
                "OpenTelemetry packages not available. Install with: "
                "pip install opentelemetry-api opentelemetry-sdk opentelemetry-exporter-otlp"
            )

        if exporter_endpoint:
            resource = Resource.create(
                {SERVICE_NAME: service_name, SERVICE_VERSION: service_version}
            )
            reader = PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=exporter_endpoint),
                export_interval_millis=export_interval_seconds * 1000,
            )
            metrics.set_meter_provider(
                MeterProvider(resource=resource, metric_readers=[reader])
            )

        self.meter = metrics.get_meter(service_name)
        self._counters: Dict[str, Any] = {}
        self._gauges: Dict[str, Any] = {}
        self._histograms: Dict[str, Any] = {}

    @staticmethod
    def _attributes(tag_dict: TagDict) -> Dict[str, str]:
        return {str(k): str(v) for k, v in (tag_dict or {}).items()}

    def increment(
        self, name: str, value: Union[int, float] = 1, tag_dict: TagDict = None
    ) -> None:
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(name=name)
        self._counters[name].add(value, attributes=self._attributes(tag_dict))

    def gauge(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        if name not in self._gauges:
            self._gauges[name] = self.meter.create_up_down_counter(name=name)
        self._gauges[name].add(value, attributes=self._attributes(tag_dict))

    def timer(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(name=name, unit="s")
        self._histograms[name].record(value, attributes=self._attributes(tag_dict))

    async def close(self) -> None:
        try:
            meter_provider = metrics.get_meter_provider()
            if hasattr(meter_provider, "shutdown"):
                meter_provider.shutdown()
        except Exception as e:
            logger.warning(f"Error closing OTEL metrics client: {e}")


class NoOpMetricsClient(MetricsClient):
    """Discards every measurement."""

    def increment(
        self, name: str, value: Union[int, float] = 1, tag_dict: TagDict = None
    ) -> None:
        pass

    def gauge(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        pass

    def timer(self, name: str, value: Union[int, float], tag_dict: TagDict = None) -> None:
        pass

    async def close(self) -> None:
        pass


def create_metrics_client(
    backend: str,
    service_name: str = "ibremote",
    host: str = "localhost",
    port: int = 8125,
    otel_endpoint: Optional[str] = None,
    debug: bool = False,
) -> MetricsClient:
    """
    Create the metrics client for ``backend`` ('telegraf', 'otel' or 'none').

    Raises:
        ValueError: If the backend is unknown or its packages are not installed
    """
    backend = backend.lower()

    if backend == "telegraf":
        if not TELEGRAF_AVAILABLE:
            raise ValueError(
                "aio-statsd package required for 'telegraf' backend. "
                "Install with: pip install aio-statsd"
            )
        return TelegrafCompatibilityClient(
            TelegrafStatsdClient(host=host, port=port, debug=debug)
        )

    elif backend == "otel":
        if not OTEL_AVAILABLE:
            raise ValueError(
                "OpenTelemetry packages required for 'otel' backend. "
                "Install with: pip install opentelemetry-api opentelemetry-sdk "
                "opentelemetry-exporter-otlp"
            )
        return OTELMetricsClient(service_name=service_name, exporter_endpoint=otel_endpoint)

    elif backend == "none":
        logger.info("Metrics collection disabled (no-op client)")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. Supported backends: 'telegraf', 'otel', 'none'"
    )
