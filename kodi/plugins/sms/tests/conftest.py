import pytest
from prometheus_client import CollectorRegistry

from kodi.metrics.metrics import MetricsCollector
from kodi.plugins.pms.tests.conftest import InMemoryStore


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return MetricsCollector(registry=registry)


@pytest.fixture
def store():
    return InMemoryStore()
