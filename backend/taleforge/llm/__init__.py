"""LLM integration components.

- `client.py`: LiteLLM-backed generation engine
- `prompt_loader.py`: Phase instruction and prompt loading
- `session_logger.py`: Per-session turn logs
"""

from taleforge.llm.client import LiteLLMEngine, get_model_string
from taleforge.llm.prompt_loader import PromptLoader

__all__ = [
    "LiteLLMEngine",
    "get_model_string",
    "PromptLoader",
]
