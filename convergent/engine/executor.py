"""
Convergent apply executor.

Walks the DAG with one asyncio task per node. A node waits on its producers'
events, resolves its properties, diffs them against the observed resource and
creates, updates or leaves it alone. Provider calls run in worker threads and
hold a slot of the bounded pool only while the call is in flight.

Per-node lifecycle: Planned -> Resolving -> Applying -> Applied, with Failed
reachable from Resolving and Applying. Nodes whose producers did not apply end
Blocked.
"""
import asyncio
import itertools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from convergent.config import EngineConfig
from convergent.engine.actions import ActionCoordinator
from convergent.engine.graph import DAG
from convergent.engine.registry import Registry
from convergent.engine.resolver import resolve, resolve_properties
from convergent.engine.retry import call_with_retry
from convergent.engine.state import ResourceRecord, StateStore
from convergent.errors import (
    ApplyCancelled,
    ConvergentError,
    ExpressionError,
    NodeError,
    ProviderTerminalError,
    UnresolvedDependencyError,
)
from convergent.models.report import ApplyReport, ApplyStatus, NodeOutcome, NodeReport
from convergent.models.resource import NodeKind, NodeState, ResourceNode
from convergent.models.values import Sensitive, mask, reveal
from convergent.providers.base import Provider

logger = logging.getLogger(__name__)

_OUTCOMES = {
    NodeState.APPLIED: NodeOutcome.APPLIED,
    NodeState.FAILED: NodeOutcome.FAILED,
    NodeState.BLOCKED: NodeOutcome.BLOCKED,
}


def diff(desired: Dict[str, Any], observed: Dict[str, Any]) -> List[str]:
    """Names of desired properties whose observed value differs or is missing."""
    changed = []
    for key, value in desired.items():
        if key not in observed or observed[key] != value:
            changed.append(key)
    return sorted(changed)


class ApplyExecutor:
    def __init__(
        self,
        registry: Registry,
        dag: DAG,
        provider: Provider,
        coordinator: Optional[ActionCoordinator],
        state: StateStore,
        config: Optional[EngineConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.registry = registry
        self.dag = dag
        self.provider = provider
        self.coordinator = coordinator
        self.state = state
        self.config = config or EngineConfig()
        self._cancel = cancel_event or threading.Event()
        self._clock = itertools.count()
        self._slots: Optional[asyncio.Semaphore] = None
        self._fatal: Optional[BaseException] = None
        self.pruned: List[NodeReport] = []
        self.outputs: Dict[str, Any] = {}

    # ------------------------------------------------------------ control
    def cancel(self) -> None:
        """Stop issuing new external calls. Safe to call from any thread."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _move(self, node: ResourceNode, state: NodeState) -> None:
        node.transition(state, next(self._clock))
        logger.debug("%s -> %s", node.address, state.value)

    def _fail(self, node: ResourceNode, exc: BaseException) -> None:
        node.error = str(exc)
        self._move(node, NodeState.FAILED)
        logger.error("%s failed: %s", node.address, exc)

    # ------------------------------------------------------------ provider calls
    async def _call(self, fn: Callable, *args) -> Any:
        async with self._slots:
            return await asyncio.to_thread(fn, *args)

    async def _call_with_retry(self, node: ResourceNode, fn: Callable, *args) -> Any:
        """Call the provider, retrying transient failures with exponential backoff."""

        def count_attempt():
            node.attempts += 1

        return await call_with_retry(
            lambda: self._call(fn, *args),
            self.config,
            node.address,
            fn.__name__,
            cancelled=self._cancel.is_set,
            on_attempt=count_attempt,
        )

    # ------------------------------------------------------------ apply
    async def apply(self) -> ApplyReport:
        self._slots = asyncio.Semaphore(self.config.max_workers)
        if self.coordinator is not None:
            self.coordinator.bind(self._slots, self._cancel.is_set)

        done = [asyncio.Event() for _ in range(len(self.registry))]
        try:
            await asyncio.gather(*(self._apply_node(i, done) for i in self.dag.order))
            if self._fatal is not None:
                raise self._fatal
            if not self.cancelled:
                await self._prune_orphans()
        finally:
            self.state.save()

        self.outputs = self._resolve_outputs()
        return self.report("apply")

    async def _wait_for(self, producers, done) -> None:
        for p in sorted(producers):
            await done[p].wait()

    async def _apply_node(self, index: int, done: List[asyncio.Event]) -> None:
        node = self.registry[index]
        try:
            producers = self.dag.producers[index]
            await self._wait_for(producers, done)

            blockers = [
                self.registry[p].address for p in sorted(producers)
                if self.registry[p].state != NodeState.APPLIED
            ]
            if blockers:
                if any(self.registry[p].state in (NodeState.FAILED, NodeState.BLOCKED) for p in producers):
                    node.blocked_by = blockers
                    self._move(node, NodeState.BLOCKED)
                    logger.warning("%s blocked by %s", node.address, ", ".join(blockers))
                return
            if self.cancelled:
                return

            self._move(node, NodeState.RESOLVING)
            try:
                properties = resolve_properties(node.properties, self.registry.scope())
            except ExpressionError as exc:
                self._fail(node, exc)
                return

            self._move(node, NodeState.APPLYING)
            try:
                outputs, change = await self._converge(index, node, properties)
            except ApplyCancelled:
                node.changed = "cancelled"
                logger.info("%s not started: apply cancelled", node.address)
                return
            except NodeError as exc:
                self._fail(node, exc)
                return

            node.changed = change
            self.registry.publish(index, outputs)
            self._move(node, NodeState.APPLIED)
            logger.info("%s: %s", node.address, change)
        except Exception as exc:
            # Engine bug: stop everything, report after in-flight work finishes
            if self._fatal is None:
                self._fatal = exc
            self.cancel()
            if node.state in (NodeState.RESOLVING, NodeState.APPLYING):
                self._fail(node, exc)
            if not isinstance(exc, ConvergentError):
                logger.exception("%s: unexpected error", node.address)
        finally:
            done[index].set()

    async def _converge(self, index: int, node: ResourceNode, properties: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        if node.kind == NodeKind.LOCAL:
            return {"value": properties.get("value")}, "computed"
        if node.kind == NodeKind.ACTION:
            return await self._converge_action(index, node, properties)
        return await self._converge_resource(index, node, properties)

    def _dependencies(self, index: int) -> List[str]:
        return sorted(self.registry[p].address for p in self.dag.producers[index])

    async def _converge_action(self, index: int, node: ResourceNode, properties: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        if self.coordinator is None:
            raise ProviderTerminalError("no action interface configured")
        record = self.state.get(node.address)
        if record is not None and record.handle:
            self.coordinator.remember(node.address, record.handle)

        def count_attempt():
            node.attempts += 1

        outputs, started = await self.coordinator.run(
            node.address,
            node.resource_type,
            reveal(properties),
            node.exports,
            node.sensitive_exports,
            on_attempt=count_attempt,
        )
        self.state.put(ResourceRecord(
            address=node.address,
            resource_type=node.resource_type,
            kind=node.kind.value,
            handle=self.coordinator.handle_for(node.address),
            dependencies=self._dependencies(index),
        ))
        return outputs, "created" if started else "unchanged"

    async def _converge_resource(self, index: int, node: ResourceNode, properties: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
        desired = reveal(properties)
        record = self.state.get(node.address)
        observed = None

        if record is not None and record.resource_id:
            observed = await self._call_with_retry(
                node, self.provider.read, node.resource_type, record.resource_id
            )
            if observed is None:
                logger.warning("%s: %s no longer exists, recreating", node.address, record.resource_id)

        if observed is None:
            resource_id, provider_outputs = await self._call_with_retry(
                node, self.provider.create, node.resource_type, desired
            )
            change = "created"
        else:
            resource_id = record.resource_id
            changed = diff(desired, observed)
            if not changed:
                provider_outputs = observed
                change = "unchanged"
            else:
                logger.info("%s: updating %s", node.address, ", ".join(changed))
                provider_outputs = await self._call_with_retry(
                    node, self.provider.update, node.resource_type, resource_id, desired
                )
                change = "updated"

        self.state.put(ResourceRecord(
            address=node.address,
            resource_type=node.resource_type,
            kind=node.kind.value,
            resource_id=resource_id,
            dependencies=self._dependencies(index),
        ))
        outputs: Dict[str, Any] = dict(provider_outputs or {})
        # Declared properties keep their sensitivity tags
        outputs.update(properties)
        outputs["id"] = resource_id
        return outputs, change

    # ------------------------------------------------------------ orphans
    async def _prune_orphans(self) -> None:
        orphans = [a for a in self.state.addresses() if a not in self.registry]
        for address in self.state.teardown_order(orphans):
            record = self.state.get(address)
            holder = ResourceNode(kind=NodeKind(record.kind), resource_type=record.resource_type,
                                  name=address.split(".", 1)[-1])
            report = NodeReport(address=address, kind=record.kind, outcome=NodeOutcome.DESTROYED,
                                change="deleted")
            try:
                await self._destroy_record(holder, record)
            except ApplyCancelled:
                report.outcome = NodeOutcome.NOT_STARTED
                report.change = None
            except NodeError as exc:
                logger.error("%s: could not delete orphan: %s", address, exc)
                report.outcome = NodeOutcome.FAILED
                report.error = str(exc)
            report.attempts = holder.attempts
            self.pruned.append(report)

    async def _destroy_record(self, node: ResourceNode, record: ResourceRecord) -> None:
        if record.kind == NodeKind.RESOURCE.value and record.resource_id:
            await self._call_with_retry(node, self.provider.delete, record.resource_type, record.resource_id)
            logger.info("%s: deleted %s", record.address, record.resource_id)
        elif record.kind == NodeKind.ACTION.value and self.coordinator is not None:
            self.coordinator.forget(record.address)
        self.state.remove(record.address)

    # ------------------------------------------------------------ destroy
    async def destroy(self) -> ApplyReport:
        """Tear down in reverse topological order: consumers before producers."""
        self._slots = asyncio.Semaphore(self.config.max_workers)
        if self.coordinator is not None:
            self.coordinator.bind(self._slots, self._cancel.is_set)

        done = [asyncio.Event() for _ in range(len(self.registry))]
        try:
            await self._prune_orphans()
            await asyncio.gather(*(self._destroy_node(i, done) for i in reversed(self.dag.order)))
            if self._fatal is not None:
                raise self._fatal
        finally:
            self.state.save()
        return self.report("destroy")

    async def _destroy_node(self, index: int, done: List[asyncio.Event]) -> None:
        node = self.registry[index]
        try:
            consumers = self.dag.consumers[index]
            await self._wait_for(consumers, done)
            blockers = [
                self.registry[c].address for c in sorted(consumers)
                if self.registry[c].state != NodeState.APPLIED
            ]
            if blockers:
                if any(self.registry[c].state in (NodeState.FAILED, NodeState.BLOCKED) for c in consumers):
                    node.blocked_by = blockers
                    self._move(node, NodeState.BLOCKED)
                return
            if self.cancelled:
                return

            self._move(node, NodeState.APPLYING)
            record = self.state.get(node.address)
            try:
                if record is None:
                    node.changed = "absent"
                else:
                    await self._destroy_record(node, record)
                    node.changed = "deleted"
            except ApplyCancelled:
                node.changed = "cancelled"
                return
            except NodeError as exc:
                self._fail(node, exc)
                return
            self._move(node, NodeState.APPLIED)
        except Exception as exc:
            if self._fatal is None:
                self._fatal = exc
            self.cancel()
            if not isinstance(exc, ConvergentError):
                logger.exception("%s: unexpected error", node.address)
        finally:
            done[index].set()

    # ------------------------------------------------------------ reporting
    def _resolve_outputs(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        scope = self.registry.scope()
        for name, decl in self.registry.outputs.items():
            try:
                value = resolve(decl.value, scope)
            except UnresolvedDependencyError:
                # producer did not apply; the output stays unknown
                continue
            except ExpressionError as exc:
                logger.error("output %s could not be evaluated: %s", name, exc)
                continue
            values[name] = Sensitive(value) if decl.sensitive else value
        return values

    def report(self, operation: str) -> ApplyReport:
        nodes = []
        for i in self.dag.order:
            node = self.registry[i]
            outcome = _OUTCOMES.get(node.state, NodeOutcome.NOT_STARTED)
            if operation == "destroy" and outcome == NodeOutcome.APPLIED:
                outcome = NodeOutcome.DESTROYED
            nodes.append(NodeReport(
                address=node.address,
                kind=node.kind.value,
                outcome=outcome,
                change=node.changed,
                outputs=mask(node.outputs) if operation == "apply" else {},
                error=node.error,
                blocked_by=list(node.blocked_by),
                attempts=node.attempts,
            ))
        nodes.extend(self.pruned)

        succeeded = sum(1 for n in nodes if n.outcome in (NodeOutcome.APPLIED, NodeOutcome.DESTROYED))
        unfinished = len(nodes) - succeeded
        if unfinished == 0:
            status = ApplyStatus.SUCCESS
        elif succeeded == 0:
            status = ApplyStatus.TOTAL_FAILURE
        else:
            status = ApplyStatus.PARTIAL_FAILURE

        errors = [f"{n.address}: {n.error}" for n in nodes if n.error]
        return ApplyReport(
            status=status,
            operation=operation,
            nodes=nodes,
            outputs=mask(self.outputs),
            errors=errors,
            cancelled=self.cancelled,
            edges=self.dag.edge_pairs(),
        )
