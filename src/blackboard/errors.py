"""Exception types shared by the store, the registry and the orchestrator."""

from __future__ import annotations


class BlackboardError(Exception):
    """Base class for expected, reportable failures."""


class ValidationError(BlackboardError, ValueError):
    """A precondition failed: unknown entity, wrong status, bad argument."""


class ConsistencyError(BlackboardError):
    """A store constraint was violated; the transaction was rolled back."""


class RuntimeUnavailable(BlackboardError):
    """The container engine is not installed or not responding."""


class BuildError(BlackboardError, RuntimeError):
    """Building the worker image failed."""


class LaunchError(BlackboardError, RuntimeError):
    """Starting a worker container failed."""


class OrphanedContainerError(BlackboardError):
    """A container started but its worker row could not be written.

    The container is left running; ``container_id`` is what an operator
    needs to inspect or remove it by hand.
    """

    def __init__(self, container_id: str, worker_id: str, cause: BaseException) -> None:
        super().__init__(
            f"Container {container_id[:12]} started for worker {worker_id} "
            f"but registration failed: {cause}. Remove it with "
            f"'docker rm -f {container_id[:12]}' if it is not needed."
        )
        self.container_id = container_id
        self.worker_id = worker_id


class StopError(BlackboardError, RuntimeError):
    """Signalling or killing a worker container failed."""
