"""In-memory registry of known environments and their lifecycle status."""
import copy
from datetime import datetime
from pathlib import Path
from typing import Optional

from enva.errors import EnvaError, NotFoundError
from enva.logging import get_logger
from enva.types import EnvironmentSpec, EnvironmentStatus, ManagedEnvironment

logger = get_logger(__name__)

_UNSET = object()

# Statuses a record may move to from each status
TRANSITIONS: dict[EnvironmentStatus, frozenset[EnvironmentStatus]] = {
    EnvironmentStatus.NOT_CREATED: frozenset({EnvironmentStatus.CREATING}),
    EnvironmentStatus.CREATING: frozenset({EnvironmentStatus.READY, EnvironmentStatus.FAILED}),
    EnvironmentStatus.READY: frozenset(
        {EnvironmentStatus.VALIDATING, EnvironmentStatus.REMOVING}
    ),
    EnvironmentStatus.VALIDATING: frozenset({EnvironmentStatus.READY, EnvironmentStatus.INVALID}),
    EnvironmentStatus.INVALID: frozenset(
        {EnvironmentStatus.VALIDATING, EnvironmentStatus.REMOVING}
    ),
    EnvironmentStatus.FAILED: frozenset({EnvironmentStatus.CREATING, EnvironmentStatus.REMOVING}),
    EnvironmentStatus.REMOVING: frozenset(
        {
            EnvironmentStatus.REMOVED,
            EnvironmentStatus.READY,
            EnvironmentStatus.INVALID,
            EnvironmentStatus.FAILED,
        }
    ),
    EnvironmentStatus.REMOVED: frozenset(),
}

# Statuses that carry an installation path
_INSTALLED = frozenset(
    {
        EnvironmentStatus.READY,
        EnvironmentStatus.VALIDATING,
        EnvironmentStatus.INVALID,
        EnvironmentStatus.REMOVING,
    }
)

# Statuses that carry a failure reason
_FAILED = frozenset({EnvironmentStatus.FAILED, EnvironmentStatus.INVALID})


class InvalidTransitionError(EnvaError):
    """A status change not allowed by the environment lifecycle."""


class EnvironmentStore:
    """Insertion-ordered table of ``ManagedEnvironment`` records.

    The store only holds state; the Manager serializes access to it and is
    the only caller of ``transition``.
    """

    def __init__(self) -> None:
        self._records: dict[str, ManagedEnvironment] = {}
        self._specs: dict[str, EnvironmentSpec] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)

    def register(self, spec: EnvironmentSpec) -> ManagedEnvironment:
        """Record ``spec``; a new name starts NotCreated, a known one keeps its status."""
        self._specs[spec.name] = spec
        record = self._records.get(spec.name)
        if record is None:
            record = ManagedEnvironment(name=spec.name)
            self._records[spec.name] = record
            logger.debug("environment_registered", name=spec.name)
        return record

    def adopt(self, name: str, path: Path) -> ManagedEnvironment:
        """Record an environment found on disk as Ready."""
        record = self._records.get(name)
        if record is None:
            record = ManagedEnvironment(name=name)
            self._records[name] = record
            logger.debug("environment_adopted", name=name, path=str(path))
        record.status = EnvironmentStatus.READY
        record.installation_path = path
        record.failure_reason = None
        return record

    def get(self, name: str) -> Optional[ManagedEnvironment]:
        return self._records.get(name)

    def require(self, name: str) -> ManagedEnvironment:
        record = self._records.get(name)
        if record is None:
            raise NotFoundError(name)
        return record

    def spec_for(self, name: str) -> Optional[EnvironmentSpec]:
        return self._specs.get(name)

    def transition(
        self,
        name: str,
        status: EnvironmentStatus,
        *,
        installation_path: object = _UNSET,
        failure_reason: Optional[str] = None,
        validated_at: Optional[datetime] = None,
    ) -> ManagedEnvironment:
        """Move ``name`` to ``status``, keeping the record's fields consistent with it."""
        record = self.require(name)
        if status not in TRANSITIONS[record.status]:
            raise InvalidTransitionError(
                f"Environment {name} cannot move from {record.status.value} to {status.value}",
                details={"name": name, "from": record.status.value, "to": status.value},
            )

        previous = record.status
        record.status = status
        if installation_path is not _UNSET:
            record.installation_path = installation_path  # type: ignore[assignment]
        if status not in _INSTALLED:
            record.installation_path = None
        record.failure_reason = failure_reason if status in _FAILED else None
        if validated_at is not None:
            record.last_validated_at = validated_at

        logger.debug(
            "environment_transition",
            name=name,
            previous=previous.value,
            status=status.value,
        )
        return record

    def delete(self, name: str) -> None:
        self.require(name)
        del self._records[name]
        # a discovered environment has no spec to forget
        self._specs.pop(name, None)

    def detached(self, name: str) -> ManagedEnvironment:
        """A copy of one record that later transitions do not affect."""
        return copy.copy(self.require(name))

    def snapshot(self) -> list[ManagedEnvironment]:
        """Detached copies of every record, in registration order."""
        return [copy.copy(record) for record in self._records.values()]
