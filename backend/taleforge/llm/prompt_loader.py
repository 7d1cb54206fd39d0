"""
Prompt Loader - Loads phase instructions and engine prompts from text files
with hot reloading support.

Prompts are organized in subdirectories:
- phases/ - Base instructions for each narrative phase
- compaction/ - History summarization prompt

Phase instructions may contain a {context} placeholder that is filled with
the turn's gathered context at submission time.
"""

import logging
from pathlib import Path
from typing import Dict, Optional

from taleforge.models.phase import Phase

logger = logging.getLogger(__name__)

PHASES_CATEGORY = "phases"


class PromptLoader:
    """Loads and caches prompts from text files with hot reloading support."""

    def __init__(
        self,
        prompts_dir: Optional[Path] = None,
        instruction_files: Optional[Dict[Phase, str]] = None,
    ):
        """
        Initialize the prompt loader.

        Args:
            prompts_dir: Directory containing prompt files. If None, uses default location
                        relative to this module.
            instruction_files: Phase -> filename under phases/. Phases not listed
                               use "<phase>.txt".
        """
        if prompts_dir is None:
            # Default to prompts/ directory next to this module
            module_dir = Path(__file__).parent
            prompts_dir = module_dir / "prompts"

        self.prompts_dir = Path(prompts_dir)
        self.instruction_files: Dict[Phase, str] = dict(instruction_files or {})
        self._cache: Dict[str, str] = {}
        self._file_timestamps: Dict[str, float] = {}

        # Load all prompts at startup
        self.reload_all()

    def _get_prompt_path(self, category: str, filename: str) -> Path:
        """Get the full path to a prompt file."""
        return self.prompts_dir / category / filename

    def _read_prompt_file(self, category: str, filename: str) -> str:
        """Read a prompt file and cache its timestamp."""
        path = self._get_prompt_path(category, filename)

        if not path.exists():
            raise FileNotFoundError(
                f"Prompt file not found: {path}\n"
                f"Expected location: {self.prompts_dir}/{category}/{filename}"
            )

        content = path.read_text(encoding="utf-8")

        # Cache timestamp for hot reloading
        cache_key = f"{category}/{filename}"
        self._file_timestamps[cache_key] = path.stat().st_mtime

        return content

    def get_prompt(self, category: str, filename: str, reload: bool = False) -> str:
        """
        Get a prompt from cache or file.

        Args:
            category: Subdirectory name (e.g., 'phases', 'compaction')
            filename: Prompt filename (e.g., 'exploration.txt')
            reload: If True, force reload from file even if cached

        Returns:
            Prompt content as string
        """
        cache_key = f"{category}/{filename}"
        path = self._get_prompt_path(category, filename)

        needs_reload = reload or cache_key not in self._cache

        # Hot reload: check if file has been modified since last load
        if not needs_reload and path.exists():
            current_mtime = path.stat().st_mtime
            cached_mtime = self._file_timestamps.get(cache_key, 0)
            if current_mtime > cached_mtime:
                needs_reload = True
                logger.info(f"Hot reloading modified prompt: {cache_key}")

        if needs_reload:
            if path.exists():
                logger.debug(f"Loading prompt: {cache_key}")
                self._cache[cache_key] = self._read_prompt_file(category, filename)
            elif cache_key in self._cache:
                # File was deleted but we have cache - keep using cache but warn
                logger.warning(
                    f"Prompt file deleted but using cached version: {cache_key}"
                )
            else:
                raise FileNotFoundError(
                    f"Prompt file not found: {path}\n"
                    f"Expected location: {self.prompts_dir}/{category}/{filename}"
                )

        return self._cache[cache_key]

    def load_instructions(self, phase: Phase) -> str:
        """Get the base instructions for a phase."""
        filename = self.instruction_files.get(phase, f"{phase.value}.txt")
        return self.get_prompt(PHASES_CATEGORY, filename)

    def reload_all(self):
        """Reload all prompts from files."""
        logger.info(f"Loading prompts from: {self.prompts_dir}")
        self._cache.clear()
        self._file_timestamps.clear()

        if not self.prompts_dir.exists():
            logger.warning(f"Prompts directory does not exist: {self.prompts_dir}")
            logger.warning("Prompts will be loaded on-demand when requested")
            return

        loaded_count = 0
        for category_dir in self.prompts_dir.iterdir():
            if category_dir.is_dir():
                category = category_dir.name
                for prompt_file in category_dir.glob("*.txt"):
                    filename = prompt_file.name
                    try:
                        cache_key = f"{category}/{filename}"
                        self._cache[cache_key] = self._read_prompt_file(
                            category, filename
                        )
                        loaded_count += 1
                        logger.debug(f"Loaded: {cache_key}")
                    except OSError as e:
                        logger.error(
                            f"Failed to load prompt {category}/{filename}: {e}"
                        )

        logger.info(f"Loaded {loaded_count} prompt file(s)")


def render_instructions(template: str, context: str) -> str:
    """Fill the {context} placeholder, or append the context if there is none."""
    if "{context}" in template:
        return template.replace("{context}", context).rstrip() + "\n"
    if not context:
        return template
    return f"{template.rstrip()}\n\n## Current Context\n{context}\n"
