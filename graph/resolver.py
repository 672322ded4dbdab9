"""
Upstream Resolver.

Responsibility:
- Walk reverse edges from a target node to collect every transitively
  connected input node, including paths through intermediate agent nodes
- Terminate on arbitrary cycles
- Order results deepest ancestors first, direct predecessors last

The walk is a pure function: each recursive call receives an immutable
`visited` set for its own path, and a separate `seen` set deduplicates
the flattened result. A node's walk depends only on the part of the path
that lies upstream of it, so results are memoized on that key and shared
ancestors of layered agent graphs are expanded once.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from shared.errors import GraphError
from shared.models import AgentNode, Connection, ContextTrace, InputNode, Workflow

logger = logging.getLogger(__name__)


def _reverse_index(workflow: Workflow) -> dict[str, list[Connection]]:
    known = {node.id for node in workflow.nodes}
    incoming: dict[str, list[Connection]] = defaultdict(list)
    for connection in workflow.connections:
        if connection.from_node_id not in known or connection.to_node_id not in known:
            logger.debug(
                "Ignoring dangling connection %s -> %s",
                connection.from_node_id,
                connection.to_node_id,
            )
            continue
        incoming[connection.to_node_id].append(connection)
    return incoming


def _upstream_closure(incoming: dict[str, list[Connection]]) -> dict[str, frozenset[str]]:
    """Every node reachable backwards from each node that has predecessors."""
    closure: dict[str, frozenset[str]] = {}
    for node_id in list(incoming):
        reached: set[str] = set()
        stack = [connection.from_node_id for connection in incoming[node_id]]
        while stack:
            current = stack.pop()
            if current in reached:
                continue
            reached.add(current)
            stack.extend(connection.from_node_id for connection in incoming.get(current, []))
        closure[node_id] = frozenset(reached)
    return closure


class _Walker:
    def __init__(self, incoming: dict[str, list[Connection]]):
        self.incoming = incoming
        self.upstream = _upstream_closure(incoming)
        self.memo: dict[tuple[str, frozenset[str]], tuple[list[str], list[Connection]]] = {}

    def walk(self, node_id: str, visited: frozenset[str]) -> tuple[list[str], list[Connection]]:
        key = (node_id, visited & self.upstream.get(node_id, frozenset()))
        cached = self.memo.get(key)
        if cached is not None:
            return cached

        ordered: list[str] = []
        edges: list[Connection] = []
        for connection in self.incoming.get(node_id, []):
            source = connection.from_node_id
            if source in visited:
                continue
            ancestors, ancestor_edges = self.walk(source, visited | {source})
            ordered.extend(ancestors)
            ordered.append(source)
            edges.extend(ancestor_edges)
            edges.append(connection)
        result = (_dedupe_ids(ordered), _dedupe_edges(edges))
        self.memo[key] = result
        return result


def _dedupe_ids(node_ids: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for node_id in node_ids:
        if node_id in seen:
            continue
        seen.add(node_id)
        result.append(node_id)
    return result


def _dedupe_edges(edges: list[Connection]) -> list[Connection]:
    seen: set[tuple[str, str]] = set()
    result: list[Connection] = []
    for edge in edges:
        key = (edge.from_node_id, edge.to_node_id)
        if key in seen:
            continue
        seen.add(key)
        result.append(edge)
    return result


def resolve_upstream_with_trace(
    workflow: Workflow,
    target_node_id: str,
) -> tuple[list[InputNode], ContextTrace]:
    """Resolve upstream input nodes and the exact path used to reach them."""
    if workflow.get_node(target_node_id) is None:
        raise GraphError(
            f"Target node not found in workflow: {target_node_id}",
            {"workflowId": workflow.id, "agentNodeId": target_node_id},
        )

    incoming = _reverse_index(workflow)
    ordered_ids, edges = _Walker(incoming).walk(target_node_id, frozenset({target_node_id}))
    ordered_ids = _dedupe_ids(ordered_ids)

    by_id = {node.id: node for node in workflow.nodes}
    inputs = [by_id[node_id] for node_id in ordered_ids if isinstance(by_id[node_id], InputNode)]
    skipped_agents = sum(1 for node_id in ordered_ids if isinstance(by_id[node_id], AgentNode))
    logger.debug(
        "Resolved %d upstream inputs for %s (%d agent nodes traversed)",
        len(inputs),
        target_node_id,
        skipped_agents,
    )
    trace = ContextTrace(ordered_node_ids=ordered_ids, edges_used=_dedupe_edges(edges))
    return inputs, trace


def resolve_upstream(workflow: Workflow, target_node_id: str) -> list[InputNode]:
    nodes, _ = resolve_upstream_with_trace(workflow, target_node_id)
    return nodes
