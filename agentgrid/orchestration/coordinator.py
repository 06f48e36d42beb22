"""Reconciles concurrent action proposals into a conflict-free set."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Set, Tuple

import structlog

from agentgrid.core.errors import ProposalConflict
from agentgrid.core.models import ActionProposal

log = structlog.get_logger(__name__)

# Returns None for proposals whose task is unknown, finished or owned by another agent.
PriorityLookup = Callable[[ActionProposal], Optional[int]]


@dataclass
class Resolution:
    """Outcome of one reconciliation window."""

    accepted: List[ActionProposal] = field(default_factory=list)
    rejected: List[Tuple[ActionProposal, ProposalConflict]] = field(default_factory=list)
    stale: List[ActionProposal] = field(default_factory=list)


class Coordinator:
    """Accepts proposals greedily by (task priority desc, timestamp asc).

    A proposal is accepted when none of its claims overlaps a claim already
    accepted in the same window. Agent and task identifiers break remaining
    ties, so the same proposal set always yields the same resolution.
    Task priorities are looked up through ``priority_of``; the coordinator
    holds no task records.
    """

    def __init__(self, priority_of: PriorityLookup) -> None:
        self._priority_of = priority_of
        self._window: List[ActionProposal] = []

    def submit(self, proposal: ActionProposal) -> None:
        """Buffer a proposal into the current reconciliation window."""
        self._window.append(proposal)
        log.debug(
            "proposal_submitted",
            agent_id=proposal.agent_id,
            task_id=proposal.task_id,
            claims=sorted(proposal.claims),
        )

    def pending(self) -> int:
        return len(self._window)

    def resolve(self, proposals: Optional[Iterable[ActionProposal]] = None) -> Resolution:
        """Resolve ``proposals``, or drain and resolve the buffered window."""
        if proposals is None:
            batch, self._window = self._window, []
        else:
            batch = list(proposals)

        resolution = Resolution()
        ranked: List[Tuple[Tuple[int, float, str, str], ActionProposal]] = []
        for proposal in batch:
            priority = self._priority_of(proposal)
            if priority is None:
                resolution.stale.append(proposal)
                continue
            ranked.append(((-priority, proposal.timestamp, proposal.agent_id, proposal.task_id), proposal))
        ranked.sort(key=lambda item: item[0])

        claimed: Set[str] = set()
        decided: Set[str] = set()
        for _, proposal in ranked:
            # Redelivered duplicates for an already-decided task are stale.
            if proposal.task_id in decided:
                resolution.stale.append(proposal)
                continue
            decided.add(proposal.task_id)
            overlap = claimed & proposal.claims
            if overlap:
                conflict = ProposalConflict(
                    f"Proposal by '{proposal.agent_id}' for task '{proposal.task_id}' "
                    f"conflicts on {sorted(overlap)}"
                )
                resolution.rejected.append((proposal, conflict))
                log.info(
                    "proposal_rejected",
                    agent_id=proposal.agent_id,
                    task_id=proposal.task_id,
                    overlap=sorted(overlap),
                )
                continue
            claimed |= proposal.claims
            resolution.accepted.append(proposal)
            log.info("proposal_accepted", agent_id=proposal.agent_id, task_id=proposal.task_id)
        return resolution
