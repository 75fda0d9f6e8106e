"""
Flow graph queries.

Pure functions over an already-loaded ``Flow`` (its ``nodes`` and ``edges``
relationships). No DB access, no side effects beyond logging.

    resolve_start_node(flow)       → the single node with no incoming edge
    resolve_next_node(flow, key)   → target of the first outgoing edge, or None
    find_node(flow, key)           → node or None
    first_unvisited_node(flow, ks) → resume point for a batch that lost its place
    validate_linear_flow(flow)     → GraphError unless the flow is a single line
"""

import logging

from refinery.core.exceptions import GraphError

logger = logging.getLogger(__name__)


def _node_keys(flow) -> list[str]:
    return [n.node_key for n in flow.nodes]


def find_node(flow, node_key):
    """Return the FlowNode with ``node_key`` or None."""
    if node_key is None:
        return None
    for node in flow.nodes:
        if node.node_key == node_key:
            return node
    return None


def outgoing_edges(flow, node_key) -> list:
    """Edges leaving ``node_key`` in sort order."""
    return [e for e in flow.edges if e.source == node_key]


def resolve_start_node(flow):
    """Return the only node without an incoming edge.

    Raises:
        GraphError: the flow has no nodes, or zero / several candidates.
    """
    if not flow.nodes:
        raise GraphError(
            f"Flow {flow.flow_key}@{flow.version} has no nodes",
            details={"flow_id": flow.id},
        )
    targets = {e.target for e in flow.edges}
    candidates = [n for n in flow.nodes if n.node_key not in targets]
    if len(candidates) != 1:
        raise GraphError(
            f"Flow {flow.flow_key}@{flow.version} must have exactly one start node, "
            f"found {len(candidates)}",
            details={"flow_id": flow.id, "candidates": [n.node_key for n in candidates]},
        )
    return candidates[0]


def resolve_next_node(flow, node_key):
    """Return the node reached through the first outgoing edge of ``node_key``.

    Returns None when ``node_key`` is terminal.

    Raises:
        GraphError: the edge points at a node that is not part of the flow.
    """
    edges = outgoing_edges(flow, node_key)
    if not edges:
        return None
    if len(edges) > 1:
        logger.warning(
            "Flow %s@%s node %s has %d outgoing edges; following %s",
            flow.flow_key, flow.version, node_key, len(edges), edges[0].target,
        )
    target = find_node(flow, edges[0].target)
    if target is None:
        raise GraphError(
            f"Edge {edges[0].edge_key} targets missing node '{edges[0].target}'",
            details={"flow_id": flow.id, "edge": edges[0].edge_key},
        )
    return target


def first_unvisited_node(flow, visited):
    """First node in traversal order whose key is not in ``visited``, or None.

    Nodes the walk from the start node never reaches, or that a broken graph
    hides from it, follow in sort order.
    """
    visited = set(visited)
    ordered, seen = [], set()
    try:
        node = resolve_start_node(flow)
    except GraphError:
        node = None
    while node is not None and node.node_key not in seen:
        seen.add(node.node_key)
        ordered.append(node)
        try:
            node = resolve_next_node(flow, node.node_key)
        except GraphError:
            node = None
    ordered.extend(n for n in flow.nodes if n.node_key not in seen)
    return next((n for n in ordered if n.node_key not in visited), None)


def validate_linear_flow(flow):
    """Reject flows that cannot be traversed unambiguously.

    A valid flow has every edge endpoint among its nodes, exactly one start
    node, at most one outgoing edge per node, no cycle, and every node
    reachable from the start node. Returns the node keys in traversal order.
    """
    keys = set(_node_keys(flow))
    if len(keys) != len(flow.nodes):
        raise GraphError("Flow contains duplicate node ids", details={"flow_id": flow.id})

    dangling = [
        e.edge_key for e in flow.edges
        if e.source not in keys or e.target not in keys
    ]
    if dangling:
        raise GraphError(
            "Flow has edges referencing unknown nodes",
            details={"flow_id": flow.id, "edges": dangling},
        )

    start = resolve_start_node(flow)

    branching = sorted({
        e.source for e in flow.edges
        if len(outgoing_edges(flow, e.source)) > 1
    })
    if branching:
        raise GraphError(
            "Branching flows are not supported; each node may have one outgoing edge",
            details={"flow_id": flow.id, "nodes": branching},
        )

    seen = []
    current = start
    while current is not None and current.node_key not in seen:
        seen.append(current.node_key)
        current = resolve_next_node(flow, current.node_key)
    if current is not None:
        raise GraphError(
            f"Flow contains a cycle at node '{current.node_key}'",
            details={"flow_id": flow.id, "node": current.node_key},
        )
    unreachable = sorted(keys - set(seen))
    if unreachable:
        raise GraphError(
            "Flow has nodes unreachable from the start node",
            details={"flow_id": flow.id, "nodes": unreachable},
        )
    return seen
