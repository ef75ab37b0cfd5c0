"""
Code Knowledge Graph Core

Shared graph store for a multi-agent development platform, with hierarchical
configuration resolution and task dependency planning built on top of it.
"""

__version__ = "1.0.0"
