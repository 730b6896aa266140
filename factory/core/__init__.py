"""factory.core

Core primitives shared by every layer.
"""

from .config import AuditConfig, FactoryConfig, LoggingConfig, SecretsConfig
from .exceptions import FactoryError
from .time import utc_now

__all__ = [
    "AuditConfig",
    "FactoryConfig",
    "FactoryError",
    "LoggingConfig",
    "SecretsConfig",
    "utc_now",
]
