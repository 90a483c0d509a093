# scope.py
from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional

from .errors import UndefinedVariable
from .model import Command


# $${VAR} is a literal "${VAR}", ${VAR} is a reference
_REF = re.compile(r"\$\$\{|\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True)
class Variable:
    name: str
    value: str
    scope: str  # "global" | "stage"


class EnvironmentScope:
    """
    Layered, read-only variable mapping.

    Lookups walk from the innermost overlay outward; the first match wins.
    Overlays never touch their parent, so a stage scope can shadow a global
    variable without changing what other stages see.
    """

    def __init__(
        self,
        variables: Optional[Mapping[str, str]] = None,
        *,
        parent: Optional[EnvironmentScope] = None,
        level: str = "global",
    ):
        self._vars = MappingProxyType({k: str(v) for k, v in dict(variables or {}).items()})
        self.parent = parent
        self.level = level

    def with_overlay(self, mapping: Mapping[str, str], *, level: str = "stage") -> EnvironmentScope:
        return EnvironmentScope(mapping, parent=self, level=level)

    def _chain(self) -> Iterator[EnvironmentScope]:
        node: Optional[EnvironmentScope] = self
        while node is not None:
            yield node
            node = node.parent

    def lookup(self, name: str) -> Optional[Variable]:
        for node in self._chain():
            if name in node._vars:
                return Variable(name=name, value=node._vars[name], scope=node.level)
        return None

    def resolve(self, name: str) -> Optional[str]:
        var = self.lookup(name)
        return var.value if var is not None else None

    def __contains__(self, name: str) -> bool:
        return self.lookup(name) is not None

    def flatten(self) -> Dict[str, str]:
        """Effective variables, inner scopes overriding outer ones."""
        out: Dict[str, str] = {}
        for node in reversed(list(self._chain())):
            out.update(node._vars)
        return out

    def variables(self) -> List[Variable]:
        return [v for v in (self.lookup(n) for n in sorted(self.flatten())) if v is not None]

    def interpolate(self, template: str) -> str:
        def _sub(m: re.Match) -> str:
            name = m.group(1)
            if name is None:
                return "${"
            value = self.resolve(name)
            if value is None:
                raise UndefinedVariable(name, template)
            return value

        return _REF.sub(_sub, template)

    def interpolate_mapping(self, mapping: Mapping[str, str]) -> Dict[str, str]:
        return {k: self.interpolate(v) for k, v in mapping.items()}

    def __repr__(self) -> str:
        return f"EnvironmentScope(level={self.level!r}, vars={dict(self._vars)!r}, parent={self.parent!r})"


def interpolate_command(command: Command, scope: EnvironmentScope) -> Command:
    """Resolve ${VAR} references in a command against the active scope."""
    return Command(
        program=scope.interpolate(command.program),
        args=tuple(scope.interpolate(a) for a in command.args),
        env=scope.interpolate_mapping(command.env),
        cwd=scope.interpolate(command.cwd) if command.cwd is not None else None,
        name=command.name,
        halt_on_failure=command.halt_on_failure,
        timeout=command.timeout,
    )
