"""LangGraph state graph for one exam turn.

Flow: apply_response → route → (start_procedure | present_stimulus | summarize | END)

Each ``invoke`` consumes at most one patient event and ends with the
router's decision in ``state["decision"]``.
"""

from __future__ import annotations

from langgraph.graph import END, StateGraph

from nearify.agent.nodes import (
    apply_response,
    present_stimulus,
    route,
    start_procedure,
    summarize,
)
from nearify.agent.state import Capability, ExamState

_DECISION_NODES: dict[Capability, str] = {
    Capability.STAIRCASE_INIT: "start_procedure",
    Capability.JCC_INIT: "start_procedure",
    Capability.STAIRCASE_NEXT: "present_stimulus",
    Capability.JCC_NEXT: "present_stimulus",
    Capability.SUMMARY: "summarize",
}


def _route_decision(state: ExamState) -> str:
    """Conditional edge: run the engine capability, or hand control back to the host."""
    decision = state.get("decision")
    if decision is None:
        return END
    return _DECISION_NODES.get(decision.capability, END)


def build_graph() -> StateGraph:
    """Build and return the compiled exam turn graph."""
    graph = StateGraph(ExamState)

    # Add nodes
    graph.add_node("apply_response", apply_response)
    graph.add_node("route", route)
    graph.add_node("start_procedure", start_procedure)
    graph.add_node("present_stimulus", present_stimulus)
    graph.add_node("summarize", summarize)

    # Set entry point
    graph.set_entry_point("apply_response")

    # Wire edges
    graph.add_edge("apply_response", "route")
    graph.add_conditional_edges(
        "route",
        _route_decision,
        ["start_procedure", "present_stimulus", "summarize", END],
    )
    graph.add_edge("start_procedure", END)
    graph.add_edge("present_stimulus", END)
    graph.add_edge("summarize", END)

    return graph.compile()


# Module-level compiled graph
exam_graph = build_graph()
