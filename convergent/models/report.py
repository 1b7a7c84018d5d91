from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ApplyStatus(str, Enum):
    SUCCESS          = "Success"
    PARTIAL_FAILURE  = "PartialFailure"
    TOTAL_FAILURE    = "TotalFailure"
    CYCLE_ERROR      = "CycleError"
    VALIDATION_ERROR = "ValidationError"


class NodeOutcome(str, Enum):
    APPLIED     = "Applied"
    FAILED      = "Failed"
    BLOCKED     = "Blocked"
    NOT_STARTED = "NotStarted"
    DESTROYED   = "Destroyed"


@dataclass
class NodeReport:
    address: str
    kind: str
    outcome: NodeOutcome
    change: Optional[str] = None        # created / updated / unchanged / deleted / ...
    outputs: Dict[str, Any] = field(default_factory=dict)   # already masked
    error: Optional[str] = None
    blocked_by: List[str] = field(default_factory=list)
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "kind": self.kind,
            "outcome": self.outcome.value,
            "change": self.change,
            "outputs": self.outputs,
            "error": self.error,
            "blocked_by": self.blocked_by,
            "attempts": self.attempts,
        }


@dataclass
class ApplyReport:
    status: ApplyStatus
    operation: str = "apply"            # "apply" or "destroy"
    nodes: List[NodeReport] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)   # already masked
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    edges: List[tuple] = field(default_factory=list)        # (consumer, producer) addresses

    @property
    def ok(self) -> bool:
        return self.status == ApplyStatus.SUCCESS

    def node(self, address: str) -> NodeReport:
        for n in self.nodes:
            if n.address == address:
                return n
        raise KeyError(address)

    def count_by_outcome(self) -> Dict[str, int]:
        return {o.value: sum(1 for n in self.nodes if n.outcome == o) for o in NodeOutcome}

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "operation": self.operation,
            "cancelled": self.cancelled,
            "summary": self.count_by_outcome(),
            "errors": self.errors,
            "nodes": [n.to_dict() for n in self.nodes],
            "outputs": self.outputs,
        }
