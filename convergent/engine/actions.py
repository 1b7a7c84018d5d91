"""
Async action coordinator.

Drives long-running external operations (key-pair generation and the like):
start once, poll with exponential backoff until a terminal result or the
configured timeout. Succeeded runs are cached by node address and are never
started again; a handle persisted in state is re-polled to recover outputs.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from convergent.config import EngineConfig
from convergent.engine.retry import call_with_retry, classify
from convergent.errors import (
    ActionFailed,
    ActionTimeout,
    ApplyCancelled,
    ProviderError,
    ProviderTransientError,
)
from convergent.models.values import Sensitive
from convergent.providers.base import ActionInterface, ActionResult, ActionStatus

logger = logging.getLogger(__name__)


@dataclass
class ActionHandle:
    address: str
    action_type: str
    handle: str
    started_at: float


class ActionCoordinator:
    def __init__(
        self,
        interface: ActionInterface,
        config: Optional[EngineConfig] = None,
        slots: Optional[asyncio.Semaphore] = None,
        cancelled: Callable[[], bool] = lambda: False,
    ):
        self.interface = interface
        self.config = config or EngineConfig()
        self._slots = slots
        self._cancelled = cancelled
        self._succeeded: Dict[str, Dict[str, Any]] = {}
        self._handles: Dict[str, str] = {}

    # ------------------------------------------------------------ cache
    def remember(self, address: str, handle: str) -> None:
        """Seed the handle of an earlier run (from state)."""
        self._handles.setdefault(address, handle)

    def handle_for(self, address: str) -> Optional[str]:
        return self._handles.get(address)

    def forget(self, address: str) -> None:
        self._succeeded.pop(address, None)
        self._handles.pop(address, None)

    def bind(self, slots: asyncio.Semaphore, cancelled: Callable[[], bool]) -> None:
        """Attach to the executor's worker pool for one run."""
        self._slots = slots
        self._cancelled = cancelled

    async def _call(self, fn, *args):
        try:
            if self._slots is None:
                return await asyncio.to_thread(fn, *args)
            async with self._slots:
                return await asyncio.to_thread(fn, *args)
        except Exception as exc:
            error = classify(fn.__name__, exc)
            if error is exc:
                raise
            raise error from exc

    # ------------------------------------------------------------ interface
    async def invoke(
        self,
        address: str,
        action_type: str,
        payload: Dict[str, Any],
        on_attempt: Optional[Callable[[], None]] = None,
    ) -> ActionHandle:
        """Start the action, retrying transient start failures with backoff."""
        handle = await call_with_retry(
            lambda: self._call(self.interface.start, action_type, payload),
            self.config,
            address,
            "start",
            cancelled=self._cancelled,
            on_attempt=on_attempt,
        )
        self._handles[address] = handle
        logger.info("%s: started %s (handle %s)", address, action_type, handle)
        return ActionHandle(address, action_type, handle, asyncio.get_running_loop().time())

    async def poll(self, handle: ActionHandle) -> ActionResult:
        try:
            return await self._call(self.interface.status, handle.handle)
        except ProviderTransientError as exc:
            logger.warning("%s: status check failed, will retry: %s", handle.address, exc)
            return ActionResult(ActionStatus.PENDING)

    async def run(
        self,
        address: str,
        action_type: str,
        payload: Dict[str, Any],
        exports: List[str],
        sensitive: List[str],
        on_attempt: Optional[Callable[[], None]] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Return ``(outputs, started)`` for the action bound to ``address``; ``started``
        is False when an earlier run was reused.

        Raises ActionTimeout, ActionFailed or a ProviderError; all are contained
        to the node.
        """
        if address in self._succeeded:
            logger.debug("%s: action already succeeded, reusing result", address)
            return self._succeeded[address], False

        loop = asyncio.get_running_loop()
        handle = None
        previous = self._handles.get(address)
        if previous is not None:
            handle = ActionHandle(address, action_type, previous, loop.time())
            try:
                result = await self.poll(handle)
            except ProviderError as exc:
                logger.warning("%s: earlier handle %s is unusable, starting again: %s", address, previous, exc)
                handle = None
            else:
                if result.status == ActionStatus.SUCCEEDED:
                    return self._finish(address, handle.handle, result, exports, sensitive), False
                if result.status == ActionStatus.FAILED:
                    logger.info("%s: earlier run failed, starting again", address)
                    handle = None

        if handle is None:
            if self._cancelled():
                raise ApplyCancelled("cancelled before the action was started")
            handle = await self.invoke(address, action_type, payload, on_attempt)

        result = await self._wait(handle)
        if result.status == ActionStatus.FAILED:
            raise ActionFailed(f"{action_type} failed: {result.reason or 'no reason given'}")
        return self._finish(address, handle.handle, result, exports, sensitive), True

    async def _wait(self, handle: ActionHandle) -> ActionResult:
        loop = asyncio.get_running_loop()
        deadline = handle.started_at + self.config.action_timeout
        interval = self.config.action_poll_interval
        polls = 0
        while True:
            result = await self.poll(handle)
            polls += 1
            if result.terminal:
                logger.info("%s: action %s after %d poll(s)", handle.address, result.status.value, polls)
                return result
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ActionTimeout(
                    f"{handle.action_type} did not finish within "
                    f"{self.config.action_timeout:g}s"
                )
            # Sleeping here holds no worker slot
            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * 2, self.config.action_poll_max_interval)

    def _finish(
        self,
        address: str,
        handle: str,
        result: ActionResult,
        exports: List[str],
        sensitive: List[str],
    ) -> Dict[str, Any]:
        missing = [name for name in exports if name not in result.outputs]
        if missing:
            raise ActionFailed(f"action result lacks exported field(s) {', '.join(missing)}")
        outputs: Dict[str, Any] = {"id": handle}
        for name in exports:
            value = result.outputs[name]
            outputs[name] = Sensitive(value) if name in sensitive else value
        self._handles[address] = handle
        self._succeeded[address] = outputs
        return outputs
