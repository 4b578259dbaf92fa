#!/usr/bin/env python3
"""
Main entry point for Mindmap Builder workflow
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from pydantic import TypeAdapter

from mindmap_agent.config import MindmapConfig, get_mindmap_config, setup_logging
from mindmap_agent.models import Theme
from .workflow import MindmapWorkflow

logger = logging.getLogger(__name__)

def load_themes(path: str) -> List[Theme]:
    """Read a JSON array of themes, camelCase or snake_case keys"""
    with open(path, "r") as f:
        return TypeAdapter(List[Theme]).validate_python(json.load(f))

def build_output(final_state) -> dict:
    """Serializable view of the final workflow state"""
    return {
        "themes": [theme.model_dump(mode="json", by_alias=True) for theme in final_state.get("hierarchy", [])],
        "stats": final_state.get("processing_stats", {}),
        "errors": final_state.get("errors", []),
        "validation": final_state.get("validation", {}),
    }

async def main(argv: Optional[List[str]] = None):
    """Main function for mindmap builder"""
    parser = argparse.ArgumentParser(description="Build a hierarchical mindmap from flat code change themes")
    parser.add_argument("themes_file", help="JSON file holding an array of themes")
    parser.add_argument("--output", help="Output file for the mindmap (default: stdout)")
    parser.add_argument("--max-depth", type=int, help="Override the maximum hierarchy depth")
    parser.add_argument("--skip-expansion", action="store_true", help="Stop after consolidation")
    parser.add_argument("--skip-hierarchy-dedup", action="store_true", help="Skip cross-level deduplication")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")

    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(level=args.log_level)

    workflow = None
    try:
        themes = load_themes(args.themes_file)

        config = get_mindmap_config()
        if args.max_depth is not None:
            config = MindmapConfig(**{**config.model_dump(), "max_hierarchy_depth": args.max_depth})

        workflow = MindmapWorkflow(config=config)
        print(f"Building mindmap from {len(themes)} themes")
        final_state = await workflow.execute(
            themes,
            skip_expansion=args.skip_expansion,
            skip_hierarchy_dedup=args.skip_hierarchy_dedup
        )
        output = build_output(final_state)

        if args.output:
            with open(args.output, "w") as f:
                json.dump(output, f, indent=2)
            print(f"Mindmap saved to {args.output}")
        else:
            print(json.dumps(output, indent=2))

        stats = final_state.get("processing_stats", {})
        expansion = stats.get("expansion", {})
        print("\n" + "=" * 50)
        print("MINDMAP BUILD SUMMARY")
        print("=" * 50)
        print(f"Input themes: {stats.get('input_themes', 0)}")
        print(f"Root themes: {len(output['themes'])}")
        print(f"Total nodes: {stats.get('total_nodes', 0)}")
        print(f"Max depth reached: {expansion.get('max_depth_reached', 0)}")
        print(f"Atomic themes: {expansion.get('atomic_identified', 0)}")
        print(f"Cross-level merges: {stats.get('cross_level_merges', 0)}")
        print(f"Degraded stages: {len(output['errors'])}")
        print(f"Hierarchy valid: {output['validation'].get('is_valid', True)}")
        print("=" * 50)

    except Exception as e:
        logger.error(f"Failed to build mindmap: {str(e)}")
        print(f"Error: {str(e)}")
        sys.exit(1)
    finally:
        if workflow is not None:
            await workflow.close()

if __name__ == "__main__":
    import asyncio
    asyncio.run(main())
