"""
phase-orchestrator: phase-pipeline orchestration engine.

Turns a natural-language requirement into a backend through five sequential
phases (requirements, schema, interface, test, implementation). Candidates are
proposed by a pluggable oracle, checked by external validators, and corrected
in bounded retry loops.

Import boundary: importing the package root must not configure logging or load
configuration. Heavy submodules are imported explicitly by callers.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
