"""
Context Store - Scoped values shared between nodes of one run.

Scope hierarchy:
- root: run-global variables plus outputs of top-level nodes
- loop_iteration: one per loop iteration, child of the loop's region scope
- branch: one per node execution, child of the region scope it runs in

A node writes into its own branch scope. When the node succeeds the
branch is merged into its parent and frozen; when it fails the branch
is discarded. Resolution walks from the caller's scope up through its
ancestors only, so a node never sees values from a sibling branch that
has not been merged.

Scope ids are hierarchical paths ("root/fetch", "root/loop[2]/summarize"),
which keeps them deterministic across replays of the same graph.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowrun.errors import ScopeError, UnresolvedError
from flowrun.graph.node import ValueRef

logger = logging.getLogger(__name__)

ROOT_SCOPE = "root"


class ScopeKind(StrEnum):
    ROOT = "root"
    BRANCH = "branch"
    LOOP_ITERATION = "loop_iteration"


@dataclass
class Scope:
    """One level of the context hierarchy."""

    id: str
    kind: ScopeKind
    parent_id: str | None = None
    node_id: str | None = None  # node (or loop) that created the scope
    iteration: int | None = None
    values: dict[tuple[str | None, str], Any] = field(default_factory=dict)
    frozen: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class ContextStore:
    """
    Run-scoped mapping from (node_id, key) to value with nested scopes.

    Example:
        store = ContextStore({"question": "hi"})
        branch = store.push_scope(ScopeKind.BRANCH, ROOT_SCOPE, node_id="llm")
        store.write("llm", "text", "hello", branch)
        store.merge_scope_up(branch)
        store.resolve(ValueRef(node="llm", key="text"), ROOT_SCOPE)  # "hello"
    """

    def __init__(self, initial_variables: dict[str, Any] | None = None):
        self._scopes: dict[str, Scope] = {
            ROOT_SCOPE: Scope(id=ROOT_SCOPE, kind=ScopeKind.ROOT),
        }
        for key, value in (initial_variables or {}).items():
            self.write(None, key, value, ROOT_SCOPE)

    @property
    def root_id(self) -> str:
        return ROOT_SCOPE

    def get_scope(self, scope_id: str) -> Scope:
        scope = self._scopes.get(scope_id)
        if scope is None:
            raise ScopeError(f"Unknown scope '{scope_id}'")
        return scope

    def has_scope(self, scope_id: str) -> bool:
        return scope_id in self._scopes

    # === SCOPE LIFECYCLE ===

    def push_scope(
        self,
        kind: ScopeKind,
        parent: str,
        node_id: str | None = None,
        iteration: int | None = None,
    ) -> str:
        """Create a child scope of ``parent`` and return its id."""
        parent_scope = self.get_scope(parent)
        if kind == ScopeKind.LOOP_ITERATION:
            scope_id = f"{parent_scope.id}/{node_id}[{iteration}]"
        else:
            scope_id = f"{parent_scope.id}/{node_id}"
        if scope_id in self._scopes:
            raise ScopeError(f"Scope '{scope_id}' already exists")

        self._scopes[scope_id] = Scope(
            id=scope_id,
            kind=kind,
            parent_id=parent_scope.id,
            node_id=node_id,
            iteration=iteration,
        )
        return scope_id

    def merge_scope_up(self, scope_id: str) -> None:
        """Copy a scope's values into its parent, then freeze it."""
        scope = self.get_scope(scope_id)
        if scope.parent_id is None:
            raise ScopeError("Cannot merge the root scope")
        if scope.frozen:
            raise ScopeError(f"Scope '{scope_id}' was already merged")
        parent = self.get_scope(scope.parent_id)
        if parent.frozen:
            raise ScopeError(f"Cannot merge into frozen scope '{parent.id}'")
        parent.values.update(scope.values)
        scope.frozen = True

    def freeze_scope(self, scope_id: str) -> None:
        """Freeze without merging (completed loop iterations)."""
        self.get_scope(scope_id).frozen = True

    def discard_scope(self, scope_id: str) -> None:
        """Drop a scope and every scope below it."""
        prefix = scope_id + "/"
        for sid in [s for s in self._scopes if s == scope_id or s.startswith(prefix)]:
            del self._scopes[sid]

    # === WRITES ===

    def write(self, node_id: str | None, key: str, value: Any, scope_id: str) -> None:
        scope = self.get_scope(scope_id)
        if scope.frozen:
            raise ScopeError(f"Cannot write {node_id}.{key} into frozen scope '{scope_id}'")
        scope.values[(node_id, key)] = value

    def write_outputs(self, node_id: str, outputs: dict[str, Any], scope_id: str) -> None:
        for key, value in outputs.items():
            self.write(node_id, key, value, scope_id)

    async def write_outputs_async(
        self, node_id: str, outputs: dict[str, Any], scope_id: str
    ) -> None:
        """write_outputs under the scope's lock. Node tasks write through here."""
        async with self.get_scope(scope_id).lock:
            self.write_outputs(node_id, outputs, scope_id)

    async def merge_scope_up_async(self, scope_id: str) -> None:
        """merge_scope_up holding the parent's lock, so sibling merges serialize."""
        scope = self.get_scope(scope_id)
        if scope.parent_id is None:
            raise ScopeError("Cannot merge the root scope")
        async with self.get_scope(scope.parent_id).lock:
            self.merge_scope_up(scope_id)

    # === READS ===

    def ancestors(self, scope_id: str) -> list[str]:
        """The scope itself followed by its ancestors up to root."""
        chain = []
        current: str | None = scope_id
        while current is not None:
            scope = self.get_scope(current)
            chain.append(scope.id)
            current = scope.parent_id
        return chain

    def resolve(self, ref: ValueRef, caller_scope: str) -> Any:
        """
        Resolve a reference from the caller's scope chain.

        Raises:
            UnresolvedError: no ancestor scope holds the value
        """
        key = (ref.node, ref.key)
        for sid in self.ancestors(caller_scope):
            values = self._scopes[sid].values
            if key in values:
                return values[key]
        raise UnresolvedError(ref.node, ref.key, caller_scope)

    def get_outputs(self, node_id: str, scope_id: str) -> dict[str, Any]:
        """Every value a node wrote, as visible from ``scope_id`` (nearest wins)."""
        outputs: dict[str, Any] = {}
        for sid in reversed(self.ancestors(scope_id)):
            for (nid, key), value in self._scopes[sid].values.items():
                if nid == node_id:
                    outputs[key] = value
        return outputs

    def variables(self) -> dict[str, Any]:
        return {
            key: value
            for (nid, key), value in self._scopes[ROOT_SCOPE].values.items()
            if nid is None
        }

    def collect_accumulated(
        self, node_id: str, keys: list[str], iteration_scopes: list[str]
    ) -> dict[str, list[Any]]:
        """
        Concatenate a node's outputs across loop iteration scopes.

        Iterations are taken in iteration-index order regardless of the
        order of ``iteration_scopes``. List values are extended, scalars
        appended. Iterations that never produced the key contribute nothing.
        """
        scopes = sorted(
            (self.get_scope(sid) for sid in iteration_scopes),
            key=lambda s: s.iteration if s.iteration is not None else -1,
        )
        collected: dict[str, list[Any]] = {key: [] for key in keys}
        for scope in scopes:
            for key in keys:
                if (node_id, key) not in scope.values:
                    continue
                value = scope.values[(node_id, key)]
                if isinstance(value, list):
                    collected[key].extend(value)
                else:
                    collected[key].append(value)
        return collected

    def snapshot(self, scope_id: str) -> dict[str, Any]:
        """Flattened view of everything visible from a scope, keyed 'node.key' / '$var'."""
        view: dict[str, Any] = {}
        for sid in reversed(self.ancestors(scope_id)):
            for (nid, key), value in self._scopes[sid].values.items():
                view[str(ValueRef(node=nid, key=key))] = value
        return view
