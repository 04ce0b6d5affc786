"""Load and render LLM instruction templates from disk.

Templates live in ``recall_chat/templates/`` unless ``RECALL_INSTRUCTIONS_DIR``
points elsewhere. Rendering uses ``str.format_map`` and leaves unknown
placeholders untouched, so templates may contain literal braces for examples.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render instruction templates."""

    def __init__(self, base_dir: Path | str | None = None):
        self.base_dir = self._resolve_base_dir(base_dir)
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("RECALL_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "templates").resolve()

    def load(self, name: str) -> str:
        """Load instruction template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self.base_dir / name
        if not path.is_file():
            raise FileNotFoundError(
                f"Instruction template not found: {path}. "
                "Add the file under the templates folder."
            )
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, template_name: str, /, **variables: object) -> str:
        """Render template with simple ``str.format`` placeholder substitution."""
        template = self.load(template_name)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values))


_loader: InstructionLoader | None = None


def get_instruction_loader() -> InstructionLoader:
    """Get the global instruction loader."""
    global _loader
    if _loader is None:
        _loader = InstructionLoader()
    return _loader
