"""
Typed plugin registries for job classes and batching strategies.

Migrations store the names of their job class and batching strategy. The
runner resolves those names through registries populated at application
startup, and each plugin is validated against its interface when it is
registered, so a typo or a synchronous ``perform`` fails at import time
instead of in the middle of a migration.

A plugin is either a class (instantiated without arguments on every
``create``) or an already configured instance (returned as is).

Usage:
    # Decorator-based registration
    @register_job_class
    class BackfillColumn:
        async def perform(self, context: BatchContext) -> None:
            ...

    # Explicit registration of a configured instance
    job_class_registry.register(CopyColumn(engine), "CopyColumn")

    # Lookup
    job = job_class_registry.create("BackfillColumn")
"""

from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar, overload

from batchmigrate.exceptions import (
    BatchingStrategyNotFoundError,
    DuplicateRegistrationError,
    InvalidPluginError,
    JobClassNotFoundError,
    RegistryError,
)
from batchmigrate.jobs import BatchJobClass
from batchmigrate.models import normalize_class_name
from batchmigrate.strategies import BatchingStrategy, PrimaryKeyBatchingStrategy

logger = logging.getLogger(__name__)

TPlugin = TypeVar("TPlugin")
TRegistered = TypeVar("TRegistered")


class PluginRegistry(Generic[TPlugin]):
    """
    Thread-safe mapping from plugin name to plugin.

    Subclasses set ``kind`` (used in messages), ``method_name`` (the async
    method every plugin must provide) and ``_not_found``.
    """

    kind: str = "plugin"
    method_name: str = ""

    def __init__(self) -> None:
        self._registry: dict[str, Any] = {}
        self._lock = threading.RLock()

    def _not_found(self, name: str, available: list[str]) -> RegistryError:
        return RegistryError(f"{self.kind} '{name}' is not registered. Available: {available}")

    def _resolve_name(self, plugin: Any, name: str | None) -> str:
        if name is None:
            declared = getattr(plugin, "name", None)
            if isinstance(declared, str) and declared:
                name = declared
            elif isinstance(plugin, type):
                name = plugin.__name__
            else:
                name = type(plugin).__name__
        return normalize_class_name(name)

    def _validate(self, plugin: Any, name: str) -> None:
        method = getattr(plugin, self.method_name, None)
        if method is None or not callable(method):
            raise InvalidPluginError(self.kind, name, f"missing method '{self.method_name}'")
        if not inspect.iscoroutinefunction(method):
            raise InvalidPluginError(
                self.kind, name, f"'{self.method_name}' must be an async method"
            )

    def register(self, plugin: TRegistered, name: str | None = None) -> TRegistered:
        """
        Register a plugin class or instance.

        Args:
            plugin: Class or configured instance implementing the interface.
            name: Registration name. Defaults to the plugin's ``name``
                attribute, then to its class name.

        Returns:
            The plugin (enables use as decorator)

        Raises:
            InvalidPluginError: If the plugin does not implement the interface
            DuplicateRegistrationError: If the name belongs to another plugin
        """
        resolved = self._resolve_name(plugin, name)
        if not resolved:
            raise InvalidPluginError(self.kind, repr(plugin), "empty name")
        self._validate(plugin, resolved)

        with self._lock:
            existing = self._registry.get(resolved)
            if existing is not None:
                if existing is not plugin:
                    raise DuplicateRegistrationError(self.kind, resolved, existing, plugin)
                return plugin
            self._registry[resolved] = plugin
            logger.debug(
                "Registered %s '%s' -> %r",
                self.kind,
                resolved,
                plugin,
                extra={"plugin_kind": self.kind, "plugin_name": resolved},
            )
        return plugin

    def get(self, name: str) -> Any:
        """Return the registered class or instance for ``name``."""
        resolved = normalize_class_name(name)
        with self._lock:
            if resolved not in self._registry:
                raise self._not_found(resolved, sorted(self._registry))
            return self._registry[resolved]

    def create(self, name: str) -> TPlugin:
        """Return a ready-to-use plugin, instantiating registered classes."""
        plugin = self.get(name)
        if isinstance(plugin, type):
            return plugin()  # type: ignore[no-any-return]
        return plugin  # type: ignore[no-any-return]

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._registry.pop(normalize_class_name(name), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._registry.clear()

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._registry)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        with self._lock:
            return normalize_class_name(name) in self._registry

    def __len__(self) -> int:
        with self._lock:
            return len(self._registry)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())


class JobClassRegistry(PluginRegistry[BatchJobClass]):
    """Registry of job classes, keyed by ``job_class_name``."""

    kind = "job class"
    method_name = "perform"

    def _not_found(self, name: str, available: list[str]) -> RegistryError:
        return JobClassNotFoundError(name, available)


class StrategyRegistry(PluginRegistry[BatchingStrategy]):
    """Registry of batching strategies, keyed by ``batch_class_name``."""

    kind = "batching strategy"
    method_name = "next_range"

    def _not_found(self, name: str, available: list[str]) -> RegistryError:
        return BatchingStrategyNotFoundError(name, available)


def default_strategy_registry() -> StrategyRegistry:
    """A strategy registry with the built-in strategies registered."""
    registry = StrategyRegistry()
    registry.register(PrimaryKeyBatchingStrategy)
    return registry


job_class_registry = JobClassRegistry()
strategy_registry = default_strategy_registry()


@overload
def register_job_class(plugin: type[TRegistered]) -> type[TRegistered]: ...


@overload
def register_job_class(
    plugin: None = None,
    *,
    name: str | None = None,
    registry: JobClassRegistry | None = None,
) -> Callable[[type[TRegistered]], type[TRegistered]]: ...


def register_job_class(
    plugin: type[TRegistered] | None = None,
    *,
    name: str | None = None,
    registry: JobClassRegistry | None = None,
) -> type[TRegistered] | Callable[[type[TRegistered]], type[TRegistered]]:
    """
    Decorator to register a job class.

    Can be used with or without parentheses:

        @register_job_class
        class BackfillColumn: ...

        @register_job_class(name="Backfill", registry=custom_registry)
        class BackfillColumn: ...
    """
    target = registry if registry is not None else job_class_registry

    def decorator(cls: type[TRegistered]) -> type[TRegistered]:
        return target.register(cls, name)

    if plugin is not None:
        return decorator(plugin)
    return decorator


@overload
def register_batching_strategy(plugin: type[TRegistered]) -> type[TRegistered]: ...


@overload
def register_batching_strategy(
    plugin: None = None,
    *,
    name: str | None = None,
    registry: StrategyRegistry | None = None,
) -> Callable[[type[TRegistered]], type[TRegistered]]: ...


def register_batching_strategy(
    plugin: type[TRegistered] | None = None,
    *,
    name: str | None = None,
    registry: StrategyRegistry | None = None,
) -> type[TRegistered] | Callable[[type[TRegistered]], type[TRegistered]]:
    """Decorator to register a batching strategy. See register_job_class."""
    target = registry if registry is not None else strategy_registry

    def decorator(cls: type[TRegistered]) -> type[TRegistered]:
        return target.register(cls, name)

    if plugin is not None:
        return decorator(plugin)
    return decorator


__all__ = [
    "PluginRegistry",
    "JobClassRegistry",
    "StrategyRegistry",
    "default_strategy_registry",
    "job_class_registry",
    "strategy_registry",
    "register_job_class",
    "register_batching_strategy",
]
