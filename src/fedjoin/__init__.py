"""
fedjoin - federated join engine for search requests.

Executes satellite queries against SQL and search backends, caches their
results, and injects the joined values into search queries as filters.
"""

__version__ = "0.1.0"

from fedjoin.core.config import settings
from fedjoin.core.logging import get_logger

logger = get_logger(__name__)

__all__ = ["settings", "logger", "__version__"]
