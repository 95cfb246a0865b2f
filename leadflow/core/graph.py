"""
Workflow Graph Model

Parses a stored workflow definition into typed nodes and edges, validates its
structure, and answers the navigation questions the engine asks (outgoing
edges, successor along a label, triggers of a given type).

Storage shape (Workflow.graph_definition):
    {
        "nodes": [{"id": "t1", "type": "trigger_manual", "config": {}}, ...],
        "edges": [{"id": "e1", "source": "t1", "target": "a1"}, ...]
    }

Edge labels:
    - "true" / "false": only on edges leaving a condition node
    - "body" / "done": only on edges leaving a loop node
    - None: every other node, at most one outgoing edge (no fan-out)
"""

import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Literal, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from .exceptions import StructuralError
from .nodes import BaseNode, TRIGGER_TYPES, create_node_from_dict

logger = logging.getLogger(__name__)

MAX_RECOMMENDED_NODES = 50

EdgeLabel = Literal["true", "false", "body", "done"]


class Edge(BaseModel):
    id: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    condition: Optional[EdgeLabel] = None

    class Config:
        frozen = True
        extra = "forbid"


class ValidationIssue(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None


class ValidationResult(BaseModel):
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class WorkflowGraph:
    """
    In-memory view of one workflow: metadata plus parsed nodes and edges.

    Built from a Workflow row (`from_row`) or a raw definition
    (`from_definition`). Parsing collects every bad node/edge before raising,
    so the editor gets the complete list at once.
    """

    def __init__(
        self,
        nodes: Dict[str, BaseNode],
        edges: List[Edge],
        workflow_id: Optional[int] = None,
        workspace_id: Optional[str] = None,
        name: str = "",
        description: Optional[str] = None,
        status: str = "draft",
        is_template: bool = False,
        created_by_id: Optional[str] = None,
    ):
        self.nodes = nodes
        self.edges = edges
        self.workflow_id = workflow_id
        self.workspace_id = workspace_id
        self.name = name
        self.description = description
        self.status = status
        self.is_template = is_template
        self.created_by_id = created_by_id

        self._outgoing: Dict[str, List[Edge]] = defaultdict(list)
        self._incoming: Dict[str, List[Edge]] = defaultdict(list)
        for edge in edges:
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)

    @classmethod
    def from_definition(cls, definition: Dict[str, Any], **metadata: Any) -> "WorkflowGraph":
        """
        Parse a {"nodes": [...], "edges": [...]} definition.

        Raises:
            StructuralError: with one issue per node/edge that failed to parse
        """
        if not isinstance(definition, dict):
            raise StructuralError("Workflow definition must be an object")

        issues: List[Dict[str, Any]] = []
        nodes: Dict[str, BaseNode] = {}
        for node_data in definition.get("nodes") or []:
            node_id = node_data.get("id") if isinstance(node_data, dict) else None
            try:
                node = create_node_from_dict(node_data)
            except (ValueError, AttributeError) as e:
                issues.append({"code": "invalid_node", "message": str(e), "node_id": node_id})
                continue
            if node.id in nodes:
                issues.append({
                    "code": "duplicate_node",
                    "message": f"Duplicate node id '{node.id}'",
                    "node_id": node.id,
                })
                continue
            nodes[node.id] = node

        edges: List[Edge] = []
        for edge_data in definition.get("edges") or []:
            try:
                edges.append(Edge(**edge_data))
            except (ValidationError, TypeError) as e:
                edge_id = edge_data.get("id") if isinstance(edge_data, dict) else None
                issues.append({"code": "invalid_edge", "message": f"Invalid edge: {e}", "edge_id": edge_id})

        if issues:
            raise StructuralError(
                f"Workflow definition has {len(issues)} invalid element(s)",
                issues=issues,
            )

        logger.debug(f"Parsed workflow: {len(nodes)} nodes, {len(edges)} edges")
        return cls(nodes, edges, **metadata)

    @classmethod
    def from_row(cls, workflow) -> "WorkflowGraph":
        """Build a graph from a `Workflow` ORM row."""
        return cls.from_definition(
            workflow.graph_definition or {"nodes": [], "edges": []},
            workflow_id=workflow.id,
            workspace_id=workflow.workspace_id,
            name=workflow.name,
            description=workflow.description,
            status=workflow.status,
            is_template=bool(workflow.is_template),
            created_by_id=workflow.created_by_id,
        )

    def to_definition(self) -> Dict[str, Any]:
        return {
            "nodes": [node.model_dump(mode="json", exclude_none=True) for node in self.nodes.values()],
            "edges": [edge.model_dump(mode="json", exclude_none=True) for edge in self.edges],
        }

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def outgoing(self, node_id: str) -> List[Edge]:
        return list(self._outgoing.get(node_id, []))

    def incoming(self, node_id: str) -> List[Edge]:
        return list(self._incoming.get(node_id, []))

    def successor(self, node_id: str, label: Optional[str] = None) -> Optional[str]:
        """
        Target of the edge leaving `node_id` with the given label.

        Returns None when no such edge exists (dangling node / missing branch).
        """
        for edge in self._outgoing.get(node_id, []):
            if edge.condition == label:
                return edge.target
        return None

    def trigger_nodes(self) -> List[BaseNode]:
        return [node for node in self.nodes.values() if node.type in TRIGGER_TYPES]


def nodes_by_type(graph: WorkflowGraph, node_type: str) -> List[BaseNode]:
    """All nodes of one type, in definition order."""
    return [node for node in graph.nodes.values() if node.type == node_type]


# ============================================================================
# VALIDATION
# ============================================================================

def _issue(code: str, message: str, node_id: Optional[str] = None, edge_id: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(code=code, message=message, node_id=node_id, edge_id=edge_id)


def _check_branching(node: BaseNode, edges: List[Edge]) -> List[ValidationIssue]:
    labels = [edge.condition for edge in edges]

    if node.type == "end":
        if edges:
            return [_issue("invalid_branching", f"End node '{node.id}' cannot have outgoing edges", node.id)]
        return []

    if node.type == "condition":
        if sorted(labels, key=str) != ["false", "true"]:
            return [_issue(
                "invalid_branching",
                f"Condition node '{node.id}' needs exactly one 'true' and one 'false' edge (found {labels})",
                node.id,
            )]
        return []

    if node.type == "loop":
        problems = []
        if labels.count("body") != 1:
            problems.append(f"exactly one 'body' edge (found {labels.count('body')})")
        if labels.count("done") > 1:
            problems.append(f"at most one 'done' edge (found {labels.count('done')})")
        if any(label not in ("body", "done") for label in labels):
            problems.append("only 'body'/'done' labels")
        if problems:
            return [_issue("invalid_branching", f"Loop node '{node.id}' needs " + "; ".join(problems), node.id)]
        return []

    if any(label is not None for label in labels):
        return [_issue(
            "invalid_branching",
            f"Node '{node.id}' ({node.type}) cannot have labelled edges (found {labels})",
            node.id,
        )]
    if len(edges) > 1:
        return [_issue(
            "invalid_branching",
            f"Node '{node.id}' ({node.type}) has {len(edges)} outgoing edges; only one is allowed",
            node.id,
        )]
    return []


def _cycles_avoiding_loops(graph: WorkflowGraph, edges: Iterable[Edge]) -> List[List[str]]:
    """
    Strongly connected components of the graph with loop nodes removed.

    Any component with more than one node (or a self edge) is a cycle that no
    loop node bounds.
    """
    loop_ids = {node_id for node_id, node in graph.nodes.items() if node.type == "loop"}
    adjacency: Dict[str, List[str]] = defaultdict(list)
    self_edges: Set[str] = set()
    for edge in edges:
        if edge.source in loop_ids or edge.target in loop_ids:
            continue
        if edge.source == edge.target:
            self_edges.add(edge.source)
        adjacency[edge.source].append(edge.target)

    # Tarjan, iterative
    index_of: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = 0

    for root in graph.nodes:
        if root in loop_ids or root in index_of:
            continue
        work = [(root, 0)]
        while work:
            node_id, child_index = work.pop()
            if child_index == 0:
                index_of[node_id] = lowlink[node_id] = counter
                counter += 1
                stack.append(node_id)
                on_stack.add(node_id)
            children = adjacency.get(node_id, [])
            if child_index < len(children):
                work.append((node_id, child_index + 1))
                child = children[child_index]
                if child not in index_of:
                    work.append((child, 0))
                elif child in on_stack:
                    lowlink[node_id] = min(lowlink[node_id], index_of[child])
                continue
            if lowlink[node_id] == index_of[node_id]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node_id:
                        break
                if len(component) > 1 or node_id in self_edges:
                    components.append(sorted(component))
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node_id])

    return components


def validate(graph: WorkflowGraph) -> ValidationResult:
    """
    Check the structure of a workflow graph and report every violation found.

    Errors (block activation):
        invalid_edge       edge references a node that does not exist
        invalid_branching  outgoing edges don't fit the node type
        missing_trigger    no trigger node at all
        trigger_inbound    a trigger has incoming edges
        unbounded_cycle    a cycle that passes through no loop node
        unreachable        node cannot be reached from any trigger

    Warnings (non-blocking):
        dangling_node      non-end node without outgoing edge (ends the run)
        too_many_nodes     more than 50 nodes
    """
    result = ValidationResult()

    valid_edges: List[Edge] = []
    for edge in graph.edges:
        missing = [endpoint for endpoint in (edge.source, edge.target) if endpoint not in graph.nodes]
        if missing:
            result.errors.append(_issue(
                "invalid_edge",
                f"Edge '{edge.id}' references non-existent node(s): {', '.join(missing)}",
                edge_id=edge.id,
            ))
        else:
            valid_edges.append(edge)

    outgoing: Dict[str, List[Edge]] = defaultdict(list)
    for edge in valid_edges:
        outgoing[edge.source].append(edge)

    for node in graph.nodes.values():
        result.errors.extend(_check_branching(node, outgoing.get(node.id, [])))

    triggers = [node for node in graph.nodes.values() if node.type in TRIGGER_TYPES]
    if not triggers:
        result.errors.append(_issue("missing_trigger", "Workflow must have at least one trigger node"))
    else:
        for trigger in triggers:
            inbound = [edge for edge in valid_edges if edge.target == trigger.id]
            if inbound:
                result.errors.append(_issue(
                    "trigger_inbound",
                    f"Trigger node '{trigger.id}' cannot have incoming edges",
                    trigger.id,
                ))

        reachable: Set[str] = set()
        frontier = [trigger.id for trigger in triggers]
        while frontier:
            node_id = frontier.pop()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            frontier.extend(edge.target for edge in outgoing.get(node_id, []))
        for node in graph.nodes.values():
            if node.id not in reachable:
                result.errors.append(_issue(
                    "unreachable",
                    f"Node '{node.id}' is not reachable from any trigger",
                    node.id,
                ))

    for component in _cycles_avoiding_loops(graph, valid_edges):
        result.errors.append(_issue(
            "unbounded_cycle",
            f"Cycle through {component} does not pass through a loop node",
            component[0],
        ))

    for node in graph.nodes.values():
        if node.type != "end" and not outgoing.get(node.id):
            result.warnings.append(_issue(
                "dangling_node",
                f"Node '{node.id}' has no outgoing edge; runs reaching it end successfully",
                node.id,
            ))

    if len(graph.nodes) > MAX_RECOMMENDED_NODES:
        result.warnings.append(_issue(
            "too_many_nodes",
            f"Workflow has {len(graph.nodes)} nodes; more than {MAX_RECOMMENDED_NODES} is hard to maintain",
        ))

    if result.errors:
        logger.info(f"Graph validation failed with {len(result.errors)} error(s)")
    return result


def validate_or_raise(graph: WorkflowGraph) -> ValidationResult:
    """Like `validate`, but raises StructuralError carrying every error."""
    result = validate(graph)
    if not result.is_valid:
        raise StructuralError(
            f"Workflow has {len(result.errors)} structural error(s)",
            issues=[issue.model_dump() for issue in result.errors],
        )
    return result


# ============================================================================
# COPYING
# ============================================================================

def _copy_topology(graph: WorkflowGraph) -> Dict[str, Any]:
    """Copy nodes/edges with fresh ids, rewiring edges to the new node ids."""
    id_map = {node_id: f"node_{uuid.uuid4().hex[:12]}" for node_id in graph.nodes}

    nodes = []
    for node in graph.nodes.values():
        data = node.model_dump(mode="json", exclude_none=True)
        data["id"] = id_map[node.id]
        nodes.append(data)

    edges = []
    for edge in graph.edges:
        data = edge.model_dump(mode="json", exclude_none=True)
        data["id"] = f"edge_{uuid.uuid4().hex[:12]}"
        data["source"] = id_map.get(edge.source, edge.source)
        data["target"] = id_map.get(edge.target, edge.target)
        edges.append(data)

    return {"nodes": nodes, "edges": edges}


def clone_workflow(
    graph: WorkflowGraph,
    target_workspace_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    created_by_id: Optional[str] = None,
) -> WorkflowGraph:
    """
    Copy a workflow into a workspace.

    Topology is preserved, ids are fresh, and the copy always starts as a
    non-template draft regardless of the source status.
    """
    return WorkflowGraph.from_definition(
        _copy_topology(graph),
        workspace_id=target_workspace_id,
        name=name or f"{graph.name} (Copy)",
        description=description or graph.description,
        status="draft",
        is_template=False,
        created_by_id=created_by_id or graph.created_by_id,
    )


def instantiate_template(
    template: WorkflowGraph,
    workspace_id: str,
    name: str,
    created_by_id: Optional[str] = None,
    description: Optional[str] = None,
) -> WorkflowGraph:
    """Create a draft workflow from a template graph."""
    if not template.is_template:
        raise StructuralError(f"Workflow '{template.name}' is not a template")
    return clone_workflow(
        template,
        target_workspace_id=workspace_id,
        name=name,
        description=description,
        created_by_id=created_by_id,
    )
