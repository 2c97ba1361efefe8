"""
Review workflow: read a paragraph, ask the model for a revision, apply it as
tracked changes. Also holds the prompt library the instructions come from.
"""

import json
from pathlib import Path
from typing import List, Optional

import structlog

from trackdiff.config import ReviewConfig
from trackdiff.errors import InputError
from trackdiff.host.document import HostDocument
from trackdiff.llm import OllamaClient
from trackdiff.models import ApplyResult, Prompt, render_prompt
from trackdiff.redline.fallback import FallbackController
from trackdiff.redline.strategies import BlockReplaceStrategy, CursorReplayStrategy

logger = structlog.get_logger(__name__)

DEFAULT_PROMPTS = [
    Prompt(
        id="legal-review",
        name="Legal Review",
        template=(
            "Review and improve the following contract text for legal issues, ambiguities, and risks. "
            "Return ONLY the revised text with no explanations, commentary, or introductory phrases:\n\n{selection}"
        ),
        description="Comprehensive legal review of contract text",
    ),
    Prompt(
        id="plain-english",
        name="Plain English",
        template=(
            "Rewrite the following legal text in plain, simple English while maintaining legal accuracy. "
            "Return ONLY the rewritten text with no explanations, commentary, or introductory phrases:\n\n{selection}"
        ),
        description="Convert legal jargon to plain language",
    ),
]


class PromptLibrary:
    """Named instruction templates, persisted as a JSON list."""

    def __init__(self, prompts: Optional[List[Prompt]] = None, path: Optional[Path] = None):
        self.prompts = list(prompts if prompts is not None else DEFAULT_PROMPTS)
        self.path = path

    @classmethod
    def load(cls, path: Path) -> "PromptLibrary":
        if not path.exists():
            return cls(path=path)
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls([Prompt(**item) for item in data], path=path)

    def save(self, path: Optional[Path] = None):
        target = path or self.path
        if target is None:
            raise ValueError("No path to save the prompt library to")
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump([p.model_dump() for p in self.prompts], f, indent=2)

    def get(self, prompt_id: str) -> Prompt:
        for prompt in self.prompts:
            if prompt.id == prompt_id:
                return prompt
        raise KeyError(f"Unknown prompt '{prompt_id}'")

    def upsert(self, prompt: Prompt):
        for i, existing in enumerate(self.prompts):
            if existing.id == prompt.id:
                self.prompts[i] = prompt
                return
        self.prompts.append(prompt)

    def remove(self, prompt_id: str):
        self.prompts = [p for p in self.prompts if p.id != prompt_id]


def build_controller(config: ReviewConfig) -> FallbackController:
    secondary = BlockReplaceStrategy() if config.fallback_strategy == "block" else CursorReplayStrategy()
    return FallbackController(
        secondary=secondary,
        fallback_granularity=config.fallback_granularity,
        track_changes=config.track_changes,
    )


def apply_revision(
    document: HostDocument, paragraph_index: int, revised_text: str, config: Optional[ReviewConfig] = None
) -> ApplyResult:
    """Applies `revised_text` to one body paragraph as tracked changes."""
    config = config or ReviewConfig()
    context = document.new_context()
    live_range = document.paragraph(context, paragraph_index).get_range()
    current = live_range.load_text()
    context.sync()

    result = build_controller(config).apply_with_fallback(context, live_range, current.value, revised_text)
    logger.info(
        "Revision applied",
        paragraph=paragraph_index,
        strategy=result.strategy,
        fallback=result.used_fallback,
    )
    return result


class ReviewService:
    def __init__(self, config: ReviewConfig, client: Optional[OllamaClient] = None):
        self.config = config
        self.client = client or OllamaClient(config)

    def suggest(self, selection: str, instruction: str) -> str:
        """Asks the model for a revision of `selection`, keeping its surrounding whitespace."""
        if not selection.strip():
            raise InputError("Please select some text first.")
        if not instruction.strip():
            raise InputError("Please enter a prompt.")

        response = self.client.generate(render_prompt(instruction, selection)).strip()
        if not response:
            raise InputError("Model returned an empty revision")

        leading = selection[: len(selection) - len(selection.lstrip())]
        trailing = selection[len(selection.rstrip()) :]
        return f"{leading}{response}{trailing}"

    def review_paragraph(self, document: HostDocument, paragraph_index: int, instruction: str) -> ApplyResult:
        context = document.new_context()
        selection = document.paragraph(context, paragraph_index).load_text()
        context.sync()

        logger.info("Processing selection", paragraph=paragraph_index, chars=len(selection.value))
        revised = self.suggest(selection.value, instruction)
        return apply_revision(document, paragraph_index, revised, self.config)
