"""
Mindmap Builder Workflow Package
Builds a hierarchical mindmap of a code change from flat themes
"""

from .workflow import MindmapWorkflow, MindmapState, create_mindmap_workflow
from .main import main as mindmap_builder_main

__all__ = ["MindmapWorkflow", "MindmapState", "create_mindmap_workflow", "mindmap_builder_main"]
