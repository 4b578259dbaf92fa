"""
Mindmap Agent - Hierarchical theme consolidation and expansion
"""

from .mindmap_builder import MindmapWorkflow, create_mindmap_workflow, mindmap_builder_main

__all__ = [
    "MindmapWorkflow",
    "create_mindmap_workflow",
    "mindmap_builder_main"
]
