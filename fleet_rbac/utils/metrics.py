import re
import threading
from collections import defaultdict
from collections.abc import Generator
from typing import (
    Any,
    ClassVar,
    TypeVar,
)

from prometheus_client.core import (
    REGISTRY,
    Counter,
    CounterMetricFamily,
    Gauge,
    GaugeMetricFamily,
    Metric,
)
from prometheus_client.registry import Collector
from pydantic import BaseModel

run_time = Gauge(
    name="fleet_rbac_last_run_seconds",
    documentation="Last run duration in seconds",
    labelnames=["integration"],
)

run_status = Gauge(
    name="fleet_rbac_last_run_status",
    documentation="Last run status",
    labelnames=["integration"],
)

execution_counter = Counter(
    name="fleet_rbac_execution_counter",
    documentation="Counts started integration executions",
    labelnames=["integration"],
)


#
# Class based metrics
#

LabelValues = tuple[str, ...]


def _label_value(value: Any) -> str:
    # prometheus renders booleans lowercase
    return str(value).lower() if isinstance(value, bool) else str(value)


class BaseMetric(BaseModel):
    """
    A metric is a pydantic model whose fields are its labels. The docstring
    of a subclass becomes the metric help text.
    """

    NAME_SUFFIX: ClassVar[str] = ""

    @classmethod
    def name(cls) -> str:
        """
        Snake case class name without a `_metric` or type suffix, e.g.
        `SelectedClustersGauge` becomes `selected_clusters`. Subclasses
        can override this.
        """
        metric_name = re.sub(r"(?<!^)(?=[A-Z])", "_", cls.__name__).lower()
        for suffix in ("_metric", cls.NAME_SUFFIX):
            if suffix:
                metric_name = metric_name.removesuffix(suffix)
        return metric_name

    @classmethod
    def label_names(cls) -> list[str]:
        return [f.alias or name for name, f in cls.model_fields.items()]

    @classmethod
    def metric_family(cls) -> Metric:
        raise NotImplementedError

    def label_values(self) -> LabelValues:
        return tuple(_label_value(v) for v in self.model_dump(by_alias=True).values())


class GaugeMetric(BaseMetric):
    NAME_SUFFIX: ClassVar[str] = "_gauge"

    @classmethod
    def metric_family(cls) -> GaugeMetricFamily:
        return GaugeMetricFamily(
            cls.name(), cls.__doc__ or "", labels=cls.label_names()
        )


class CounterMetric(BaseMetric):
    NAME_SUFFIX: ClassVar[str] = "_counter"

    @classmethod
    def metric_family(cls) -> CounterMetricFamily:
        return CounterMetricFamily(
            cls.name(), cls.__doc__ or "", labels=cls.label_names()
        )


MetricT = TypeVar("MetricT", bound=BaseMetric)


class MetricsContainer:
    """
    Holds the current value of every class based metric per label set.
    Worker threads of the controller write concurrently, all access goes
    through a lock.
    """

    def __init__(self) -> None:
        self._values: dict[type[BaseMetric], dict[LabelValues, float]] = (
            defaultdict(dict)
        )
        self._lock = threading.Lock()

    def set_gauge(self, metric: GaugeMetric, value: float) -> None:
        with self._lock:
            self._values[type(metric)][metric.label_values()] = value

    def remove_gauge(self, metric: GaugeMetric) -> None:
        """Drops the series of `metric`, e.g. for a deleted object."""
        with self._lock:
            self._values[type(metric)].pop(metric.label_values(), None)

    def inc_counter(self, counter: CounterMetric, by: int = 1) -> None:
        labels = counter.label_values()
        with self._lock:
            values = self._values[type(counter)]
            values[labels] = values.get(labels, 0) + by

    def get_metrics(
        self, metric_class: type[MetricT], **labels: Any
    ) -> list[tuple[MetricT, float]]:
        """Metrics of `metric_class` whose labels include `labels`."""
        with self._lock:
            values = dict(self._values.get(metric_class, {}))
        wanted = {key: _label_value(value) for key, value in labels.items()}
        fields = list(metric_class.model_fields)
        found = []
        for label_values, value in values.items():
            current = dict(zip(fields, label_values, strict=True))
            if all(current.get(k) == v for k, v in wanted.items()):
                found.append((metric_class(**current), value))
        return found

    def get_metric_value(
        self, metric_class: type[MetricT], **labels: Any
    ) -> float | None:
        """
        Value of the single metric matching `labels`. Returns None without
        a match and raises ValueError when the labels are ambiguous.
        """
        found = self.get_metrics(metric_class, **labels)
        if len(found) > 1:
            raise ValueError(
                f"{len(found)} metrics found for {metric_class.__name__} "
                f"and labels {labels}"
            )
        return found[0][1] if found else None

    def collect(self) -> Generator[Metric, None, None]:
        with self._lock:
            snapshot = {cls: dict(values) for cls, values in self._values.items()}
        for metric_class, values in snapshot.items():
            family = metric_class.metric_family()
            for label_values, value in values.items():
                family.add_metric(list(label_values), value)
            yield family


class MetricCollector(Collector):
    """Exposes a MetricsContainer on every prometheus scrape."""

    def __init__(self, metric_container: MetricsContainer) -> None:
        self.metric_container = metric_container
        super().__init__()

    def collect(self) -> Generator[Metric, None, None]:
        return self.metric_container.collect()


_GLOBAL_METRICS_CONTAINER = MetricsContainer()
REGISTRY.register(MetricCollector(_GLOBAL_METRICS_CONTAINER))


def set_gauge(metric: GaugeMetric, value: float) -> None:
    _GLOBAL_METRICS_CONTAINER.set_gauge(metric, value)


def remove_gauge(metric: GaugeMetric) -> None:
    _GLOBAL_METRICS_CONTAINER.remove_gauge(metric)


def inc_counter(counter: CounterMetric, by: int = 1) -> None:
    _GLOBAL_METRICS_CONTAINER.inc_counter(counter, by)
