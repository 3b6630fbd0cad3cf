"""Tests for the release controller."""

from chart_sync.chart import Chart
from chart_sync.manifest import ReleaseRef, ResourceKey
from chart_sync.source import SourceRevision
from chart_sync.values import ValueLayer, override_layer

RELEASE = ReleaseRef("shop", "shop")

NAMESPACE = ResourceKey("v1", "Namespace", None, "shop")
SERVICE_ACCOUNT = ResourceKey("v1", "ServiceAccount", "shop", "shop")
CONFIG_MAP = ResourceKey("v1", "ConfigMap", "shop", "shop-config")
SECRET = ResourceKey("v1", "Secret", "shop", "shop-db")
STATEFUL_SET = ResourceKey("apps/v1", "StatefulSet", "shop", "shop-db")
DEPLOYMENT = ResourceKey("apps/v1", "Deployment", "shop", "shop-api")
SERVICE_API = ResourceKey("v1", "Service", "shop", "shop-api")
SERVICE_WEB = ResourceKey("v1", "Service", "shop", "shop-web")

APPLY_ORDER = [
    NAMESPACE,
    SERVICE_ACCOUNT,
    CONFIG_MAP,
    SECRET,
    STATEFUL_SET,
    DEPLOYMENT,
    SERVICE_API,
    SERVICE_WEB,
]


def make_revision(chart: Chart, revision: str, *overrides: str) -> SourceRevision:
    """Return a source revision of the test chart with `--set` style overrides."""
    layers: list[ValueLayer] = [chart.defaults]
    if overrides:
        layers.append(override_layer(overrides))
    return SourceRevision(
        revision=revision,
        templates=chart.templates,
        layers=layers,
        chart=chart.metadata.context(),
    )
