"""Turn orchestration engine.

Components:
- `history.py`: HistoryStore and the structural repair helpers
- `context.py`: ContextAssembler building per-turn ContextPackages
- `executor.py`: TurnExecutor running one streamed, tool-using exchange
- `compactor.py`: HistoryCompactor keeping histories under their ceilings
- `phases.py`: PhaseStateMachine, the entry point for player turns

Import directly from submodules to avoid circular imports:
    from taleforge.engine.phases import PhaseStateMachine
    from taleforge.engine.history import HistoryStore
"""

# Note: No eager imports to avoid circular import issues
