import itertools
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from trackdiff.errors import PlanIntegrityError


class DiffOpKind(IntEnum):
    """Tri-state op code of the diff encoding: (-1, text), (0, text), (1, text)."""

    DELETE = -1
    EQUAL = 0
    INSERT = 1


class DiffOp(NamedTuple):
    op: DiffOpKind
    text: str


class Granularity(str, Enum):
    """Atomic unit used by the differ."""

    TOKEN = "token"
    SENTENCE = "sentence"


class Side(str, Enum):
    BEFORE = "Before"
    AFTER = "After"


_generations = itertools.count(1)


def next_generation() -> int:
    return next(_generations)


@dataclass(frozen=True)
class Token:
    index: int
    text: str
    range: Any  # host range handle, only valid for this generation
    generation: int


@dataclass
class TokenMap:
    """
    Arena of tokens for one live range, keyed by stable integer index.
    Owned by a single planning attempt and discarded afterwards.
    """

    tokens: Tuple[Token, ...]
    generation: int

    @classmethod
    def build(cls, entries: Sequence[Tuple[str, Any]]) -> "TokenMap":
        generation = next_generation()
        tokens = tuple(Token(index=i, text=text, range=rng, generation=generation) for i, (text, rng) in enumerate(entries))
        return cls(tokens=tokens, generation=generation)

    @property
    def text(self) -> str:
        return "".join(t.text for t in self.tokens)

    def __len__(self) -> int:
        return len(self.tokens)

    def __getitem__(self, index: int) -> Token:
        return self.tokens[index]

    def __iter__(self) -> Iterator[Token]:
        return iter(self.tokens)

    def owns(self, token: Token) -> bool:
        return token.generation == self.generation and 0 <= token.index < len(self.tokens)


@dataclass(frozen=True)
class InsertOp:
    anchor: Optional[Token]  # None means the start of the range
    side: Side
    text: str


@dataclass(frozen=True)
class EditPlan:
    generation: int
    token_count: int
    delete_targets: Tuple[Token, ...] = ()
    insert_ops: Tuple[InsertOp, ...] = ()

    def validate(self):
        """Checks that every referenced token belongs to this plan's generation."""
        previous = None
        for token in self.delete_targets:
            self._check_token(token)
            if previous is not None and token.index >= previous:
                raise PlanIntegrityError(
                    f"Delete targets must be strictly descending, got {token.index} after {previous}",
                    position=token.index,
                )
            previous = token.index

        for op in self.insert_ops:
            if op.anchor is not None:
                self._check_token(op.anchor)

    def _check_token(self, token: Token):
        if token.generation != self.generation:
            raise PlanIntegrityError(
                f"Token {token.index} belongs to generation {token.generation}, plan is generation {self.generation}",
                position=token.index,
            )
        if not 0 <= token.index < self.token_count:
            raise PlanIntegrityError(
                f"Token index {token.index} out of range [0, {self.token_count})", position=token.index
            )


@dataclass
class CommitResult:
    strategy: str
    deleted_indices: List[int] = field(default_factory=list)
    inserted: int = 0


class FallbackState(str, Enum):
    PRIMARY = "Primary"
    RESETTING = "Resetting"
    SECONDARY = "Secondary"
    DONE = "Done"
    TERMINAL_FAILURE = "TerminalFailure"


class ApplyResult(BaseModel):
    """Outcome of one FallbackController.apply_with_fallback call."""

    strategy: str = Field(..., description="Strategy that produced the final document state.")
    states: List[FallbackState] = Field(default_factory=list, description="State machine transition history.")
    primary_error: Optional[str] = Field(None, description="Why the primary strategy was abandoned, if it was.")
    deleted: int = 0
    inserted: int = 0

    @property
    def used_fallback(self) -> bool:
        return FallbackState.SECONDARY in self.states


class Prompt(BaseModel):
    """A reusable instruction template. `{selection}` is replaced by the selected text."""

    id: str
    name: str
    template: str = Field(..., description="Instruction text, containing {selection} where the text goes.")
    description: Optional[str] = None

    def render(self, selection: str) -> str:
        return render_prompt(self.template, selection)


def render_prompt(template: str, selection: str) -> str:
    if "{selection}" in template:
        return template.replace("{selection}", selection)
    return f"{template}\n\n{selection}"
