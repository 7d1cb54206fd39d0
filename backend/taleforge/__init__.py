"""Taleforge - turn orchestration and conversation state for LLM interactive fiction."""

__version__ = "0.1.0"
