"""
Conversation flow interpreter — graph walking, node execution, debounce,
triggers and timeouts.

Entry point: ``flows.engine.FlowEngine``. Submodules are imported directly;
the database layer imports ``flows.errors``, so this package re-exports nothing.
"""
