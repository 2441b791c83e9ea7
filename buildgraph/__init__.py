"""buildgraph - Snapshot and artifact dependency engine for CI build jobs.

This package evaluates statically configured build jobs: it resolves
their dependency links, reuses or reruns dependency builds, propagates
artifacts between runs, and records run history.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
