"""
Unit generation pipeline.

- catalog.py: Ordered stage definitions and completion predicates
- run_store.py: Checkpointing of pipeline runs to a key-value backend
- executor.py: One generation-service call per stage
- fan_out.py: Concurrent answer-key generation per assessment type
- orchestrator.py: Run loop, dependency gate, regeneration and stop
"""

__all__ = [
    "catalog",
    "run_store",
    "executor",
    "fan_out",
    "orchestrator",
]
