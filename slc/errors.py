from __future__ import annotations


class ControllerError(Exception):
    """Base class for every error the controller raises on purpose."""


class ConfigError(ControllerError):
    pass


class CycleError(ConfigError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class UnknownService(ControllerError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Unknown service '{service}'.")


class BoundsError(ControllerError):
    def __init__(self, service: str, target: int, lower: int, upper: int, reason: str | None = None):
        self.service = service
        self.target = target
        self.lower = lower
        self.upper = upper
        super().__init__(reason or f"Replica count {target} for '{service}' is outside [{lower}, {upper}].")


class OperationInProgress(ControllerError):
    def __init__(self, service: str, operation: str):
        self.service = service
        self.operation = operation
        super().__init__(f"Service '{service}' is busy with '{operation}'.")


class ProbeTimeout(ControllerError, TimeoutError):
    """A health or job wait ran past its deadline."""


class OrchestratorError(ControllerError):
    """The underlying container runtime call failed."""
