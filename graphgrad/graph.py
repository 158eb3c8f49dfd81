import dataclasses
from typing import Callable, Dict, List

from graphgrad.node import Node


def post_order_nodes(target: Node) -> List[Node]:
    """
    List the nodes ``target`` depends on, children before parents.

    Children are visited in order and the first occurrence of a reference name
    wins, so shared subgraphs appear once. ``target`` is always last.

    Parameters
    ----------
    target : Node
        Root of the traversal.

    Returns
    -------
    list[Node]
        Deterministic post-order listing.
    """
    visited = set()
    topo = []
    # (node, expanded) pairs; a node is emitted the second time it is popped
    stack = [(target, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            topo.append(node)
            continue
        if node.ref_name in visited:
            continue
        visited.add(node.ref_name)
        stack.append((node, True))
        for child in reversed(node.children):
            if child.ref_name not in visited:
                stack.append((child, False))
    return topo


def bottom_up_walk(target: Node, walk_fn: Callable[[Node], Node]) -> Node:
    """
    Rebuild the graph under ``target`` by applying ``walk_fn`` bottom-up.

    Every reference name is passed to ``walk_fn`` exactly once, after all of
    its children. The node handed to ``walk_fn`` is a shallow copy whose
    ``children`` are the already walked children, so the original graph is
    left untouched. Whatever ``walk_fn`` returns replaces the node for every
    parent that references it.

    Returns
    -------
    Node
        The walked target.
    """
    walked: Dict[str, Node] = {}
    for node in post_order_nodes(target):
        children = tuple(walked[c.ref_name] for c in node.children)
        fresh = dataclasses.replace(node, children=children, aux=dict(node.aux))
        walked[node.ref_name] = walk_fn(fresh)
    return walked[target.ref_name]
