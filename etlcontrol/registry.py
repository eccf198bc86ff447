from collections.abc import Callable, Iterator
import importlib
from typing import Protocol

from etlcontrol.errors import ConfigurationError
from etlcontrol.schemas import UnitInput, UnitResult


class Unit(Protocol):
    def execute(self, unit_input: UnitInput) -> UnitResult: ...


class FunctionUnit:
    """Adapts a plain callable to the unit interface."""

    def __init__(self, fn: Callable[[UnitInput], UnitResult]) -> None:
        self.fn = fn

    def execute(self, unit_input: UnitInput) -> UnitResult:
        return self.fn(unit_input)


class UnitRegistry:
    """Named transform/load units plus the named DQ predicates used by CUSTOM_FUNCTION rules."""

    def __init__(self) -> None:
        self._units: dict[str, Unit] = {}
        self.predicates: dict[str, Callable[..., bool]] = {}

    def register_predicate(self, name: str, predicate: Callable[..., bool]) -> None:
        if name in self.predicates:
            raise ConfigurationError(f"predicate '{name}' is already registered")
        self.predicates[name] = predicate

    def register(self, name: str, unit: Unit | Callable[[UnitInput], UnitResult]) -> None:
        if not name or not name.strip():
            raise ConfigurationError("unit name must be a non-empty string")
        if name in self._units:
            raise ConfigurationError(f"unit '{name}' is already registered")
        if not hasattr(unit, "execute"):
            unit = FunctionUnit(unit)
        self._units[name] = unit

    def resolve(self, name: str) -> Unit:
        try:
            return self._units[name]
        except KeyError:
            raise ConfigurationError(f"unit '{name}' is not registered") from None

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._units))


def load_registry_factory(reference: str) -> Callable[..., UnitRegistry]:
    """Import ``package.module:callable`` naming a registry factory."""
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"unit registry must look like 'module:callable', got {reference!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import unit registry module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"{reference!r} is not a callable registry factory")
    return factory
