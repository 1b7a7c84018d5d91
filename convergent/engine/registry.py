"""
Resource registry.

Owns every ResourceNode of one deployment, addressed both by string address
and by arena index. Counted declarations are expanded here, which is why the
graph is rebuilt whenever the registry is.
"""
import logging
from collections.abc import Mapping
from typing import Any, Dict, Iterator, List, Optional, Union

from convergent.engine.resolver import ResolvedScope, resolve
from convergent.errors import ExpressionError, ValidationError
from convergent.models.expression import COUNT_ROOT, VARIABLE_ROOT, substitute
from convergent.models.manifest import Declaration, Manifest, OutputDecl
from convergent.models.resource import NodeKind, NodeState, ResourceNode
from convergent.models.values import reveal

logger = logging.getLogger(__name__)

LOCAL_TYPE = "local"


class _AppliedView(Mapping):
    """Read-only mapping of address -> outputs, limited to Applied nodes."""

    def __init__(self, registry: "Registry"):
        self._registry = registry

    def __getitem__(self, address: str) -> Dict[str, Any]:
        node = self._registry.get(address)
        if node is None or node.state != NodeState.APPLIED:
            raise KeyError(address)
        return node.outputs

    def __iter__(self) -> Iterator[str]:
        return (n.address for n in self._registry if n.state == NodeState.APPLIED)

    def __len__(self) -> int:
        return sum(1 for n in self._registry if n.state == NodeState.APPLIED)


class Registry:
    def __init__(
        self,
        variables: Optional[Dict[str, Any]] = None,
        deployment: Optional[Dict[str, Any]] = None,
        outputs: Optional[Dict[str, OutputDecl]] = None,
        base_dir: str = "",
    ):
        self.variables: Dict[str, Any] = dict(variables or {})
        self.deployment: Dict[str, Any] = dict(deployment or {})
        self.outputs: Dict[str, OutputDecl] = dict(outputs or {})
        self.base_dir = base_dir
        self.counted: Dict[str, int] = {}
        self._nodes: List[ResourceNode] = []
        self._index: Dict[str, int] = {}

    # ------------------------------------------------------------ construction
    @classmethod
    def from_manifest(
        cls,
        manifest: Manifest,
        variables: Dict[str, Any],
        deployment: Optional[Dict[str, Any]] = None,
    ) -> "Registry":
        registry = cls(
            variables=variables,
            deployment=deployment,
            outputs=manifest.outputs,
            base_dir=manifest.base_dir,
        )
        errors: List[str] = []

        for name, expr in manifest.locals.items():
            registry.add(ResourceNode(
                kind=NodeKind.LOCAL,
                resource_type=LOCAL_TYPE,
                name=name,
                properties={"value": expr},
            ))

        for decl in manifest.declarations:
            try:
                registry._add_declaration(decl)
            except ValidationError as exc:
                errors.extend(exc.errors)

        if errors:
            raise ValidationError(errors)
        logger.debug("registry holds %d node(s)", len(registry))
        return registry

    def _count_of(self, decl: Declaration) -> int:
        bad = [
            str(r) for r in decl.count.references()
            if r.root != VARIABLE_ROOT or len(r.parts) < 2 or r.parts[1] not in self.variables
        ]
        if bad:
            raise ValidationError(
                f"{decl.address}: count must be computable from input variables, "
                f"but refers to {', '.join(bad)}"
            )
        try:
            value = reveal(resolve(decl.count, ResolvedScope(variables=self.variables)))
        except ExpressionError as exc:
            raise ValidationError(f"{decl.address}: invalid count: {exc}") from exc
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{decl.address}: count must be a non-negative whole number")
        return value

    def _add_declaration(self, decl: Declaration) -> None:
        if decl.count is None:
            for expr in decl.properties.values():
                if any(r.root == COUNT_ROOT for r in expr.references()):
                    raise ValidationError(f"{decl.address}: count.index used without count")
            self.add(self._node_for(decl, decl.name, decl.properties))
            return

        n = self._count_of(decl)
        self.counted[decl.address] = n
        for i in range(n):
            props = {k: substitute(v, COUNT_ROOT, "index", i) for k, v in decl.properties.items()}
            self.add(self._node_for(decl, f"{decl.name}[{i}]", props))

    @staticmethod
    def _node_for(decl: Declaration, name: str, properties) -> ResourceNode:
        return ResourceNode(
            kind=decl.kind,
            resource_type=decl.resource_type,
            name=name,
            properties=dict(properties),
            depends_on=list(decl.depends_on),
            exports=list(decl.exports),
            sensitive_exports=list(decl.sensitive_exports),
            source_file=decl.source_file,
        )

    def add(self, node: ResourceNode) -> int:
        if node.address in self._index:
            raise ValidationError(f"{node.address} declared more than once")
        self._index[node.address] = len(self._nodes)
        self._nodes.append(node)
        return self._index[node.address]

    # ------------------------------------------------------------ access
    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes)

    def __contains__(self, address: str) -> bool:
        return address in self._index

    def __getitem__(self, key: Union[int, str]) -> ResourceNode:
        if isinstance(key, int):
            return self._nodes[key]
        return self._nodes[self._index[key]]

    def get(self, address: str) -> Optional[ResourceNode]:
        idx = self._index.get(address)
        return None if idx is None else self._nodes[idx]

    def index_of(self, address: str) -> int:
        return self._index[address]

    @property
    def addresses(self) -> List[str]:
        return [n.address for n in self._nodes]

    # ------------------------------------------------------------ resolution
    def scope(self) -> ResolvedScope:
        return ResolvedScope(
            nodes=_AppliedView(self),
            variables=self.variables,
            deployment=self.deployment,
            base_dir=self.base_dir,
        )

    def publish(self, index: int, outputs: Dict[str, Any]) -> None:
        """Store a node's outputs. Called once, by the task that applied it."""
        self._nodes[index].outputs = outputs
