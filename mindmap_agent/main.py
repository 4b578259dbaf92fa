#!/usr/bin/env python3
"""
Main entry point for Mindmap Agent
Dispatches to specific workflow packages
"""

import sys
import argparse
import asyncio

from .mindmap_builder.main import main as mindmap_builder_main

def main():
    """Main dispatcher function"""
    parser = argparse.ArgumentParser(
        description="Mindmap Agent - Hierarchical theme consolidation and expansion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Available workflows:
  build      Consolidate flat themes and expand them into a mindmap hierarchy

Examples:
  python -m mindmap_agent build themes.json --output mindmap.json
  python -m mindmap_agent build themes.json --max-depth 6 --skip-hierarchy-dedup
        """
    )

    parser.add_argument(
        "workflow",
        choices=["build"],
        help="Workflow to execute"
    )

    # Parse only the workflow argument, pass the rest to the specific workflow
    args, remaining_args = parser.parse_known_args()

    if args.workflow == "build":
        asyncio.run(mindmap_builder_main(remaining_args))
    else:
        parser.error(f"Unknown workflow: {args.workflow}")

if __name__ == "__main__":
    main()
