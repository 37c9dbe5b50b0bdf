"""
LangGraph wiring for single-page promotion extraction.

    START -> detect -> fill_details -> finalize -> END
    detect (unparseable) -> fallback_unified -> finalize
    any terminal failure routes straight to END

The graph is compiled without a checkpointer: one invocation handles one page
and nothing is persisted between runs.
"""

from __future__ import annotations

from typing import Any

from langgraph.graph import END, START, StateGraph

from flyer_promotions.graph.nodes.extraction import (
	ExtractionNodes,
	route_after_detect,
	route_after_pass,
)
from flyer_promotions.graph.state import ExtractionState


def build_graph(nodes: ExtractionNodes) -> Any:
	"""Build and compile the extraction graph around a set of bound nodes."""
	graph = StateGraph(ExtractionState)
	graph.add_node("detect", nodes.detect)
	graph.add_node("fill_details", nodes.fill_details)
	graph.add_node("fallback_unified", nodes.fallback_unified)
	graph.add_node("finalize", nodes.finalize)

	graph.add_edge(START, "detect")
	graph.add_conditional_edges(
		"detect",
		route_after_detect,
		{
			"fill_details": "fill_details",
			"fallback_unified": "fallback_unified",
			"failed": END,
		},
	)
	for stage in ("fill_details", "fallback_unified"):
		graph.add_conditional_edges(
			stage,
			route_after_pass,
			{"finalize": "finalize", "failed": END},
		)
	graph.add_edge("finalize", END)

	return graph.compile()
