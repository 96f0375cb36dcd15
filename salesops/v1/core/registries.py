from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def __contains__(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - outbox side-effect handlers
class JobHandler(Protocol):
    """Protocol for handlers that perform an outbox job's side effect."""

    payload_model: type[BaseModel]

    async def handle(self, payload: Any) -> Any:
        """
        Perform the side effect for one job.

        Args:
            payload: Instance of ``payload_model`` validated from the job row

        Returns:
            HandlerResult describing success, or a retryable/permanent failure

        Handlers must be idempotent on a natural key in the payload: delivery
        is at-least-once, so the same payload may run more than once.
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for outbox job handlers, keyed by job_type."""

    def __init__(self):
        super().__init__("Job")


# Global registry instances (singletons)
job_registry = JobRegistry()
