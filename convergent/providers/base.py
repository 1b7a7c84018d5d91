"""
Interfaces the engine consumes.

Implementations are synchronous, like most cloud SDKs; the executor runs every
call in a worker thread. Raise ProviderTransientError for anything worth
retrying and ProviderTerminalError for everything else.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Provider(ABC):
    """Generic create/read/update/delete of resources of any type."""

    @abstractmethod
    def create(self, resource_type: str, properties: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create a resource and return ``(id, outputs)``."""

    @abstractmethod
    def read(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        """Return the observed properties, or None when the resource no longer exists."""

    @abstractmethod
    def update(self, resource_type: str, resource_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        """Update a resource in place and return its outputs."""

    @abstractmethod
    def delete(self, resource_type: str, resource_id: str) -> None:
        pass


class ActionStatus(str, Enum):
    PENDING   = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED    = "Failed"


@dataclass
class ActionResult:
    status: ActionStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @property
    def terminal(self) -> bool:
        return self.status != ActionStatus.PENDING


class ActionInterface(ABC):
    """Long-running operations whose result is obtained by polling."""

    @abstractmethod
    def start(self, action_type: str, payload: Dict[str, Any]) -> str:
        """Issue the operation and return an opaque handle."""

    @abstractmethod
    def status(self, handle: str) -> ActionResult:
        pass
