"""Rendering of retrieval results into a single prompt-ready context block."""

from ..core.domain.retrieval import EntityMatch, GraphNode, MemoryMatch

NO_CONTEXT = "No relevant information found."


def synthesize_context(
    memories: list[MemoryMatch],
    entities: list[EntityMatch],
    graph_nodes: list[GraphNode],
) -> str:
    """Build the three-section context summary.

    Sections are omitted when empty; with nothing at all the summary is
    ``NO_CONTEXT``. Graph nodes are grouped by depth in order of first
    appearance.
    """
    context = ""

    if memories:
        context += "=== RELEVANT MEMORIES ===\n\n"
        for idx, memory in enumerate(memories, 1):
            context += (
                f"[{idx}] (Similarity: {memory.similarity:.2f}, "
                f"Importance: {memory.importance_score:.2f})\n"
            )
            context += f"{memory.text}\n\n"

    if entities:
        context += "=== KEY ENTITIES ===\n\n"
        for entity in entities:
            context += f"• {entity.name} ({entity.type})"
            if entity.description:
                context += f": {entity.description}"
            context += f" [Relevance: {entity.similarity:.2f}]\n"
        context += "\n"

    if graph_nodes:
        context += "=== KNOWLEDGE GRAPH (Multi-hop Reasoning) ===\n\n"

        by_depth: dict[int, list[GraphNode]] = {}
        for node in graph_nodes:
            by_depth.setdefault(node.depth, []).append(node)

        for depth, nodes in by_depth.items():
            context += f"Depth {depth} ({depth} hop{'s' if depth > 1 else ''} away):\n"
            for node in nodes:
                context += f"  • {node.entity_name} ({node.entity_type})"
                if node.relationship_chain:
                    context += f"\n    Via: {node.relationship_chain}"
                context += f"\n    Path: {node.path}\n"
            context += "\n"

    if not context:
        context = NO_CONTEXT

    return context.strip()
