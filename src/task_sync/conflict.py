"""
Last-Write-Wins Conflict Resolution

Decides which whole version of a task survives when both the local store and
the remote peer changed it. The later updated_at wins; on an exact tie the
pending operation decides (delete > update > create). There is no field-level
merge: the losing version is discarded entirely.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .models import Operation, Task

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"


@dataclass(frozen=True)
class ResolutionOutcome:
    """Winner of a conflict plus which side it came from and why."""

    winner: Task
    source: str  # 'local' or 'remote'
    reason: str  # 'newer', 'operation_priority' or 'tie_local'


def infer_operation(task: Task) -> Operation:
    """
    Best guess at the pending operation behind a task version.

    Used for the side whose operation is not reported explicitly (usually
    the remote copy): soft-deleted means delete, an untouched record means
    create, anything else is an update.
    """
    if task.is_deleted:
        return Operation.DELETE
    if task.updated_at == task.created_at:
        return Operation.CREATE
    return Operation.UPDATE


class ConflictResolver:
    """
    Pure Last-Write-Wins resolver.

    resolve() has no side effects and always returns one of its two inputs
    unchanged, so resolving the same pair again yields the same winner.
    """

    def decide(
        self,
        local: Task,
        remote: Task,
        local_operation: Optional[Union[Operation, str]] = None,
        remote_operation: Optional[Union[Operation, str]] = None,
    ) -> ResolutionOutcome:
        """
        Pick the surviving version of a task.

        Args:
            local: Local version
            remote: Remote version
            local_operation: Pending local operation, inferred from the task if omitted
            remote_operation: Pending remote operation, inferred from the task if omitted

        Returns:
            ResolutionOutcome naming the winner
        """
        if local.updated_at > remote.updated_at:
            return ResolutionOutcome(local, LOCAL, "newer")
        if remote.updated_at > local.updated_at:
            return ResolutionOutcome(remote, REMOTE, "newer")

        local_op = Operation(local_operation) if local_operation else infer_operation(local)
        remote_op = Operation(remote_operation) if remote_operation else infer_operation(remote)

        if remote_op.priority > local_op.priority:
            return ResolutionOutcome(remote, REMOTE, "operation_priority")
        if local_op.priority > remote_op.priority:
            return ResolutionOutcome(local, LOCAL, "operation_priority")

        # Same timestamp and same operation rank: keep the local version
        return ResolutionOutcome(local, LOCAL, "tie_local")

    def resolve(
        self,
        local: Task,
        remote: Task,
        local_operation: Optional[Union[Operation, str]] = None,
        remote_operation: Optional[Union[Operation, str]] = None,
    ) -> Task:
        """Return the winning task version (see decide())."""
        outcome = self.decide(local, remote, local_operation, remote_operation)
        logger.info(
            f"Conflict resolved for task {local.id}: {outcome.source} wins ({outcome.reason})"
        )
        return outcome.winner
