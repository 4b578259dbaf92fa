#!/usr/bin/env python3
"""
Main entry point for running agent as a module
Enables: python -m mindmap_agent <workflow> <args>
"""

from .main import main

if __name__ == "__main__":
    main()
