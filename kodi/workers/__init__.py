# kodi/workers/__init__.py
import importlib
import os

import dramatiq
import structlog
from dramatiq.brokers.rabbitmq import RabbitmqBroker
from dramatiq.middleware import Retries

from kodi.core.config import settings

logger = structlog.get_logger(__name__)

# ---------------------------------------------------
# Broker
# ---------------------------------------------------
broker = RabbitmqBroker(url=settings.RABBITMQ_URL)
broker.add_middleware(Retries(max_retries=3))
dramatiq.set_broker(broker)


# ---------------------------------------------------
# Plugin Worker Discovery
# ---------------------------------------------------
def discover_plugin_workers() -> list[str]:
    """
    Import every kodi/plugins/**/tasks/*_tasks.py so their actors and
    scheduler decorators register.
    """
    package_root = os.path.realpath(os.path.join(os.path.dirname(__file__), ".."))
    plugins_dir = os.path.join(package_root, "plugins")

    modules = []
    for root, _, files in os.walk(plugins_dir):
        for f in sorted(files):
            if f.endswith("_tasks.py"):
                rel_path = os.path.relpath(os.path.join(root, f), os.path.dirname(package_root))
                modules.append(rel_path[:-3].replace(os.sep, "."))

    for m in modules:
        importlib.import_module(m)
        logger.info("worker_module_loaded", module=m)

    return modules


__all__ = [
    "broker",
    "discover_plugin_workers",
]
