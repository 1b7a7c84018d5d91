"""
Engine entry point: validate inputs, build the registry and graph, then apply
or destroy. Configuration errors come back as a report, never half-applied.
"""
import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from convergent.config import EngineConfig
from convergent.engine import graph
from convergent.engine.actions import ActionCoordinator
from convergent.engine.executor import ApplyExecutor
from convergent.engine.graph import DAG
from convergent.engine.inputs import validate_inputs
from convergent.engine.registry import Registry
from convergent.engine.state import StateStore
from convergent.errors import CycleError, ValidationError
from convergent.models.manifest import Manifest
from convergent.models.report import ApplyReport, ApplyStatus
from convergent.providers.base import ActionInterface, Provider

logger = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        manifest: Manifest,
        provider: Provider,
        actions: Optional[ActionInterface] = None,
        state: Optional[StateStore] = None,
        config: Optional[EngineConfig] = None,
        variables: Optional[Dict[str, Any]] = None,
    ):
        self.manifest = manifest
        self.provider = provider
        self.config = config or EngineConfig()
        self.state = state if state is not None else StateStore()
        self.variables = dict(variables or {})
        # Kept across runs so a succeeded action is never started twice
        self.coordinator = ActionCoordinator(actions, self.config) if actions is not None else None
        self.registry: Optional[Registry] = None
        self.dag: Optional[DAG] = None
        self.executor: Optional[ApplyExecutor] = None
        self._cancel = threading.Event()

    def prepare(self) -> Tuple[Registry, DAG]:
        """
        Validate inputs and build a fresh registry and DAG.

        Raises ValidationError or CycleError; nothing external has happened yet.
        """
        values = validate_inputs(self.manifest.variables, self.variables)
        deployment = {"suffix": self.state.ensure_suffix()}
        registry = Registry.from_manifest(self.manifest, values, deployment)
        dag = graph.build(registry)
        self.registry, self.dag = registry, dag
        return registry, dag

    def cancel(self) -> None:
        """Abort the running apply: in-flight calls finish, nothing new starts."""
        self._cancel.set()

    def _rejected(self, exc: Exception, operation: str) -> ApplyReport:
        if isinstance(exc, CycleError):
            status = ApplyStatus.CYCLE_ERROR
            errors = [str(exc)]
        else:
            status = ApplyStatus.VALIDATION_ERROR
            errors = list(exc.errors)
        for e in errors:
            logger.error("%s rejected: %s", operation, e)
        return ApplyReport(status=status, operation=operation, errors=errors)

    def _executor(self, registry: Registry, dag: DAG) -> ApplyExecutor:
        self._cancel.clear()
        self.executor = ApplyExecutor(
            registry,
            dag,
            self.provider,
            self.coordinator,
            self.state,
            self.config,
            cancel_event=self._cancel,
        )
        return self.executor

    def apply(self) -> ApplyReport:
        try:
            registry, dag = self.prepare()
        except (ValidationError, CycleError) as exc:
            return self._rejected(exc, "apply")
        logger.info("applying %d node(s)", len(dag))
        report = asyncio.run(self._executor(registry, dag).apply())
        logger.info("apply finished: %s", report.status.value)
        return report

    def destroy(self) -> ApplyReport:
        try:
            registry, dag = self.prepare()
        except (ValidationError, CycleError) as exc:
            return self._rejected(exc, "destroy")
        logger.info("destroying %d node(s)", len(dag))
        report = asyncio.run(self._executor(registry, dag).destroy())
        logger.info("destroy finished: %s", report.status.value)
        return report

    def plan_destroy(self) -> List[str]:
        """Addresses that ``destroy`` would delete, in deletion order. No side effects."""
        _, dag = self.prepare()
        in_state = set(self.state.addresses())
        orphans = [a for a in self.state.addresses() if a not in dag.addresses]
        return self.state.teardown_order(orphans) + [a for a in dag.reverse_order() if a in in_state]
