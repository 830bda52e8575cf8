from __future__ import annotations


class ConsumerError(Exception):
    """Base class for every error raised by data_consumer."""


class ConfigurationError(ConsumerError, ValueError):
    pass


class BackendError(ConsumerError):
    def __init__(self, operation: str, args: tuple = (), cause: object | None = None):
        self.operation = operation
        self.op_args = args
        self.cause = cause
        message = f"{operation} failed"
        if args:
            message += " with args " + ", ".join(repr(a) for a in args)
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class RegistryError(ConsumerError, LookupError):
    pass
