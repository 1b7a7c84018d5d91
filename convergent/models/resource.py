from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from convergent.models.expression import Expression, Reference


class NodeKind(str, Enum):
    RESOURCE = "resource"
    ACTION = "action"
    LOCAL = "local"


class NodeState(str, Enum):
    PLANNED   = "Planned"
    RESOLVING = "Resolving"
    APPLYING  = "Applying"
    APPLIED   = "Applied"
    FAILED    = "Failed"
    BLOCKED   = "Blocked"     # a producer never reached Applied


@dataclass
class ResourceNode:
    kind: NodeKind
    resource_type: str      # e.g. "azurerm_virtual_network", "local"
    name: str               # logical name, "vmss" or "vmss[1]" when counted
    properties: Dict[str, Expression] = field(default_factory=dict)
    depends_on: List[Reference] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)            # actions only
    sensitive_exports: List[str] = field(default_factory=list)  # actions only
    source_file: str = ""
    state: NodeState = NodeState.PLANNED
    outputs: Dict[str, Any] = field(default_factory=dict)
    history: List[Tuple[NodeState, int]] = field(default_factory=list)
    error: Optional[str] = None
    blocked_by: List[str] = field(default_factory=list)
    attempts: int = 0
    changed: Optional[str] = None   # "created", "updated", "unchanged", ...

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    def references(self) -> Iterator[Reference]:
        for expr in self.properties.values():
            yield from expr.references()
        yield from self.depends_on

    def transition(self, new_state: NodeState, tick: int) -> None:
        self.state = new_state
        self.history.append((new_state, tick))

    def entered(self, state: NodeState) -> Optional[int]:
        for s, tick in self.history:
            if s == state:
                return tick
        return None


@dataclass(frozen=True)
class Edge:
    """``consumer`` reads ``producer.field``; both are registry indices."""

    consumer: int
    producer: int
    field: Optional[str] = None
