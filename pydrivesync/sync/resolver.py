"""Conflict resolution policies."""

import logging
from dataclasses import dataclass
from enum import Enum

from ..exceptions import DriveConfigError
from .comparator import SyncAction, SyncDecision, order_decisions
from .modes import SyncDirection

logger = logging.getLogger(__name__)


class ConflictDecision(str, Enum):
    """Run-wide policy applied to every conflicting path."""

    NONE = "none"
    """Skip conflicts and report them"""

    KEEP_LOCAL = "keep_local"
    """Overwrite the remote file with the local one"""

    KEEP_REMOTE = "keep_remote"
    """Overwrite the local file with the remote one"""

    KEEP_LARGEST = "keep_largest"
    """Keep whichever side is larger"""


def conflict_decision_from_flags(
    keep_local: bool = False,
    keep_remote: bool = False,
    keep_largest: bool = False,
) -> ConflictDecision:
    """Map the mutually exclusive ``--keep-*`` flags to a policy.

    Raises:
        DriveConfigError: If more than one flag is set
    """
    chosen = [
        decision
        for flag, decision in (
            (keep_local, ConflictDecision.KEEP_LOCAL),
            (keep_remote, ConflictDecision.KEEP_REMOTE),
            (keep_largest, ConflictDecision.KEEP_LARGEST),
        )
        if flag
    ]
    if len(chosen) > 1:
        raise DriveConfigError(
            "Only one of --keep-local, --keep-remote and --keep-largest "
            "may be given"
        )
    return chosen[0] if chosen else ConflictDecision.NONE


@dataclass
class ConflictReportItem:
    """Outcome of one conflicting path."""

    relative_path: str
    reason: str
    """Why the path was classified as a conflict"""

    resolution: SyncAction
    """SKIP, UPLOAD or DOWNLOAD"""

    def to_dict(self) -> dict:
        return {
            "path": self.relative_path,
            "reason": self.reason,
            "resolution": self.resolution.value,
        }


class ConflictResolver:
    """Rewrites every CONFLICT decision into exactly one concrete action.

    With ``KEEP_LARGEST`` the larger side wins. On equal sizes the source
    side of the run wins: an upload sync keeps the local file, a download
    sync keeps the remote file. A file facing a directory is never
    overwritten, whatever the policy.
    """

    def __init__(self, decision: ConflictDecision, direction: SyncDirection):
        self.decision = decision
        self.direction = direction

    def resolve(
        self, decisions: list[SyncDecision]
    ) -> tuple[list[SyncDecision], list[ConflictReportItem]]:
        """Resolve all conflicts of a plan.

        Args:
            decisions: Planned decisions

        Returns:
            Tuple of (reordered decisions without CONFLICT actions,
            one report item per conflict)
        """
        resolved: list[SyncDecision] = []
        report: list[ConflictReportItem] = []

        for decision in decisions:
            if decision.action != SyncAction.CONFLICT:
                resolved.append(decision)
                continue

            action = self._choose(decision)
            if action == SyncAction.SKIP:
                reason = f"Conflict skipped: {decision.reason}"
            else:
                reason = f"Conflict resolved by {action.value}: {decision.reason}"
            logger.debug(f"{decision.relative_path}: {reason}")

            resolved.append(
                SyncDecision(action=action, reason=reason, entry=decision.entry)
            )
            report.append(
                ConflictReportItem(
                    relative_path=decision.relative_path,
                    reason=decision.reason,
                    resolution=action,
                )
            )

        return order_decisions(resolved), report

    def _choose(self, decision: SyncDecision) -> SyncAction:
        entry = decision.entry
        if entry.kind_mismatch or entry.local is None or entry.remote is None:
            return SyncAction.SKIP

        if self.decision == ConflictDecision.KEEP_LOCAL:
            return SyncAction.UPLOAD
        if self.decision == ConflictDecision.KEEP_REMOTE:
            return SyncAction.DOWNLOAD
        if self.decision == ConflictDecision.KEEP_LARGEST:
            if entry.local.size > entry.remote.size:
                return SyncAction.UPLOAD
            if entry.remote.size > entry.local.size:
                return SyncAction.DOWNLOAD
            if self.direction.source_is_local:
                return SyncAction.UPLOAD
            return SyncAction.DOWNLOAD
        return SyncAction.SKIP
