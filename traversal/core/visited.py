from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from traversal.core.models import ActionPlan


class QueuePriority(str, Enum):
    PRIMARY = "PRIMARY"
    FALLBACK = "FALLBACK"
    REVISIT = "REVISIT"


DEQUEUE_ORDER = (QueuePriority.PRIMARY, QueuePriority.FALLBACK, QueuePriority.REVISIT)


@dataclass(frozen=True, slots=True)
class Transition:
    to_signature: str
    action: str


@dataclass(slots=True)
class VisitedGraph:
    """Seen screen signatures, transition edges and per-signature visit counts."""

    signatures: set[str] = field(default_factory=set)
    edges: dict[str, list[Transition]] = field(default_factory=dict)
    visit_counts: dict[str, int] = field(default_factory=dict)

    def __contains__(self, signature: object) -> bool:
        return signature in self.signatures

    def __len__(self) -> int:
        return len(self.signatures)

    def observe(self, signature: str) -> bool:
        """Counts one observation and returns True when the signature was not seen before."""

        self.visit_counts[signature] = self.visit_counts.get(signature, 0) + 1
        if signature in self.signatures:
            return False
        self.signatures.add(signature)
        return True

    def add_edge(self, from_signature: str, to_signature: str, action: str) -> None:
        transitions = self.edges.setdefault(from_signature, [])
        edge = Transition(to_signature=to_signature, action=action)
        if edge not in transitions:
            transitions.append(edge)

    def visits(self, signature: str) -> int:
        return self.visit_counts.get(signature, 0)

    def path_to(self, target: str, start: str) -> list[str] | None:
        """Returns the action labels along the shortest recorded path, or None when unreachable."""

        if start == target:
            return []
        queue: deque[tuple[str, list[str]]] = deque([(start, [])])
        seen = {start}
        while queue:
            current, labels = queue.popleft()
            for edge in self.edges.get(current, []):
                if edge.to_signature in seen:
                    continue
                path = labels + [edge.action]
                if edge.to_signature == target:
                    return path
                seen.add(edge.to_signature)
                queue.append((edge.to_signature, path))
        return None


class ActionQueues:
    """Three FIFO tiers drained in PRIMARY, FALLBACK, REVISIT order."""

    def __init__(self) -> None:
        self._queues: dict[QueuePriority, deque[ActionPlan]] = {
            priority: deque() for priority in QueuePriority
        }

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def size(self, priority: QueuePriority) -> int:
        return len(self._queues[priority])

    def enqueue(self, action: ActionPlan, priority: QueuePriority = QueuePriority.PRIMARY) -> None:
        self._queues[priority].append(action)

    def dequeue(self) -> tuple[QueuePriority, ActionPlan] | None:
        for priority in DEQUEUE_ORDER:
            queue = self._queues[priority]
            if queue:
                return priority, queue.popleft()
        return None

    def route(self, action: ActionPlan, graph: VisitedGraph, *, revisit: bool = False) -> QueuePriority:
        """Enqueues by target: unseen screens go PRIMARY, seen ones FALLBACK, re-verification REVISIT."""

        if revisit:
            priority = QueuePriority.REVISIT
        elif action.target_signature is not None and action.target_signature in graph:
            priority = QueuePriority.FALLBACK
        else:
            priority = QueuePriority.PRIMARY
        self.enqueue(action, priority)
        return priority
