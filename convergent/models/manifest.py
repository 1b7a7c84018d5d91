from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from convergent.errors import ValidationError
from convergent.models.expression import Expression, Reference
from convergent.models.resource import NodeKind

_MISSING = object()

VARIABLE_TYPES = ("any", "string", "number", "bool", "list", "map")


@dataclass
class Validation:
    condition: Expression
    error_message: str


@dataclass
class InputVariable:
    name: str
    var_type: str = "any"
    default: Any = _MISSING
    description: str = ""
    sensitive: bool = False
    validations: List[Validation] = field(default_factory=list)

    @property
    def required(self) -> bool:
        return self.default is _MISSING


@dataclass
class Declaration:
    """A resource or action block exactly as written, before count expansion."""

    kind: NodeKind
    resource_type: str
    name: str
    properties: Dict[str, Expression] = field(default_factory=dict)
    count: Optional[Expression] = None
    depends_on: List[Reference] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    sensitive_exports: List[str] = field(default_factory=list)
    source_file: str = ""

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"


@dataclass
class OutputDecl:
    name: str
    value: Expression
    sensitive: bool = False
    description: str = ""


@dataclass
class Manifest:
    variables: Dict[str, InputVariable] = field(default_factory=dict)
    locals: Dict[str, Expression] = field(default_factory=dict)
    declarations: List[Declaration] = field(default_factory=list)
    outputs: Dict[str, OutputDecl] = field(default_factory=dict)
    source_files: List[str] = field(default_factory=list)
    base_dir: str = ""

    def merge(self, other: "Manifest") -> "Manifest":
        """Fold another file's declarations into this manifest, rejecting duplicates."""
        errors = []
        for name in other.variables:
            if name in self.variables:
                errors.append(f"variable {name!r} declared more than once")
        for name in other.locals:
            if name in self.locals:
                errors.append(f"local {name!r} declared more than once")
        for name in other.outputs:
            if name in self.outputs:
                errors.append(f"output {name!r} declared more than once")
        seen = {d.address for d in self.declarations}
        for d in other.declarations:
            if d.address in seen:
                errors.append(f"{d.address} declared more than once")
        if errors:
            raise ValidationError(errors)

        self.variables.update(other.variables)
        self.locals.update(other.locals)
        self.declarations.extend(other.declarations)
        self.outputs.update(other.outputs)
        self.source_files.extend(other.source_files)
        if not self.base_dir:
            self.base_dir = other.base_dir
        return self
