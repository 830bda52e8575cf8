"""data-consumer public API."""

from .backends import AdvisoryLockBackend, Backend, BaseBackend, ConditionalUpdateBackend, DirectoryBackend
from .config import ConsumerConfig, QuotaConfig, derive_sweep_config, derive_sweep_states
from .consumer import Consumer
from .errors import BackendError, ConfigurationError, ConsumerError, RegistryError
from .registry import BackendRegistry, create_consumer, default_registry
from .types import FAILED, PROCESSED, STATES, UNPROCESSED, WORKING, Constant, Delegate, RunStats, StateMap

__all__ = [
    "Backend",
    "BaseBackend",
    "DirectoryBackend",
    "AdvisoryLockBackend",
    "ConditionalUpdateBackend",
    "Consumer",
    "ConsumerConfig",
    "QuotaConfig",
    "derive_sweep_config",
    "derive_sweep_states",
    "BackendRegistry",
    "create_consumer",
    "default_registry",
    "ConsumerError",
    "ConfigurationError",
    "BackendError",
    "RegistryError",
    "RunStats",
    "StateMap",
    "Constant",
    "Delegate",
    "STATES",
    "UNPROCESSED",
    "WORKING",
    "PROCESSED",
    "FAILED",
]
