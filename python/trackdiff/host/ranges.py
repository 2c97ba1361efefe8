"""
Range handles over paragraph content.

A DocRange is a weak handle: a list of w:r elements (or a collapsed position)
resolved when the request that produced it runs. Handles follow run splits
through the document registry; a handle whose runs have left the document is
rejected when used. ParagraphRange always denotes the paragraph's current
content.
"""

import re
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import structlog

from trackdiff.errors import HostRejectedError, PendingValueError
from trackdiff.host.context import Pending, RequestContext
from trackdiff.host.document import Position
from trackdiff.utils.docx import (
    get_run_text,
    has_special_content,
    is_attached,
    is_deleted_run,
    paragraph_runs,
    split_run_element,
)

logger = structlog.get_logger(__name__)

# (run, start, end) offsets into the range's visible text
Layout = List[Tuple[object, int, int]]


class InsertLocation(str, Enum):
    BEFORE = "Before"
    AFTER = "After"
    START = "Start"
    END = "End"


class RangeLocation(str, Enum):
    WHOLE = "Whole"
    START = "Start"
    END = "End"


class DocRange:
    def __init__(self, context: RequestContext, p_element, description: str = "range"):
        self.context = context
        self.document = context.document
        self.description = description
        self._p = p_element
        self._runs: List = []
        self._point: Optional[Position] = None
        self._loaded_text: Optional[str] = None
        self._resolved = False
        self.document._register(self)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.description}>"

    # --- Queued requests ---

    @property
    def text(self) -> str:
        """Text as of the last load (explicit load_text or the split/search that produced this range)."""
        if self._loaded_text is None:
            raise PendingValueError(f"{self.description}.text was not loaded")
        return self._loaded_text

    def load_text(self) -> Pending[str]:
        def action():
            self._loaded_text = self._text()
            return self._loaded_text

        return self.context.enqueue(f"{self.description}.text", action, want_result=True)

    def split(self, delimiters: Sequence[str]) -> Pending[List["DocRange"]]:
        """
        Coarse split: each sub-range runs up to and including a delimiter sequence,
        so the pieces concatenate back to the whole text.
        """

        def action():
            if not delimiters or any(not d for d in delimiters):
                raise HostRejectedError(f"{self.description}.split", "delimiters must be non-empty strings")
            delim = "|".join(re.escape(d) for d in delimiters)
            pattern = re.compile(rf"(?:(?!{delim}).)*(?:{delim})+|(?:(?!{delim}).)+", re.S)
            text = self._text()
            spans = [(m.start(), m.end()) for m in pattern.finditer(text) if m.end() > m.start()]
            return self._carve(spans, "segment")

        return self.context.enqueue(f"{self.description}.split({list(delimiters)!r})", action, want_result=True)

    def search(self, text: str, match_case: bool = True) -> Pending[List["DocRange"]]:
        """All non-overlapping occurrences of `text`, left to right."""

        def action():
            if not text:
                raise HostRejectedError(f"{self.description}.search", "search text must not be empty")
            haystack = self._text()
            flags = 0 if match_case else re.IGNORECASE
            spans = [(m.start(), m.end()) for m in re.finditer(re.escape(text), haystack, flags)]
            return self._carve(spans, f"match({text!r})")

        return self.context.enqueue(f"{self.description}.search({text!r})", action, want_result=True)

    def insert_text(self, text: str, location: InsertLocation) -> "DocRange":
        inserted = DocRange(self.context, self._p, f"inserted({text!r})")

        def action():
            if location in (InsertLocation.BEFORE, InsertLocation.START):
                position = self._start()
            else:
                position = self._end()
            run = self.document.insert_run(self._p, text, position, style_source=self._style_source(position))
            if location == InsertLocation.START:
                self._adopt(run, front=True)
            elif location == InsertLocation.END:
                self._adopt(run, front=False)
            inserted._bind([run])

        self.context.enqueue(f"{self.description}.insertText({text!r}, {location.value})", action)
        return inserted

    def delete(self):
        def action():
            for run in list(self._current_runs()):
                self.document.delete_run(run)

        self.context.enqueue(f"{self.description}.delete()", action)

    def clear(self):
        self.context.enqueue(f"{self.description}.clear()", self._clear)

    def get_range(self, location: RangeLocation = RangeLocation.WHOLE) -> "DocRange":
        result = DocRange(self.context, self._p, f"{self.description}[{location.value}]")

        def action():
            if location == RangeLocation.START:
                result._bind([], point=self._start())
            elif location == RangeLocation.END:
                result._bind([], point=self._end())
            else:
                runs = self._current_runs()
                result._bind(runs, point=None if runs else self._start())

        self.context.enqueue(f"{self.description}.getRange({location.value})", action)
        return result

    def expand_to(self, other: "DocRange") -> "DocRange":
        """A range from the start of this range to the end of `other` (same paragraph)."""
        result = DocRange(self.context, self._p, f"{self.description}..{other.description}")

        def action():
            if other._p is not self._p:
                raise HostRejectedError("expandTo", "ranges belong to different paragraphs")
            all_runs = paragraph_runs(self._p)
            start = self._boundary(self._start(), all_runs)
            end = self._boundary(other._end(), all_runs)
            if end < start:
                raise HostRejectedError("expandTo", "end of target lies before start of range")
            runs = all_runs[start:end]
            result._bind(runs, point=None if runs else self._start())

        self.context.enqueue(f"{self.description}.expandTo({other.description})", action)
        return result

    # --- Resolution (runs while a batch is synchronised) ---

    def _bind(self, runs, point: Optional[Position] = None):
        self._runs = list(runs)
        self._point = point
        self._resolved = True

    def _follow_split(self, old_run, new_run):
        for i, run in enumerate(self._runs):
            if run is old_run:
                self._runs.insert(i + 1, new_run)
                break
        if self._point is not None and self._point[0] is old_run and self._point[1]:
            self._point = (new_run, True)

    def _adopt(self, run, front: bool):
        if front:
            self._runs.insert(0, run)
        else:
            self._runs.append(run)

    def _check_paragraph(self):
        if not is_attached(self._p, self.document.doc.element):
            raise HostRejectedError(self.description, "paragraph is no longer in the document")

    def _current_runs(self) -> List:
        if not self._resolved:
            raise HostRejectedError(self.description, "range handle has not been resolved")
        self._check_paragraph()
        alive = [r for r in self._runs if is_attached(r, self._p)]
        if self._runs and not alive:
            raise HostRejectedError(self.description, "range is no longer in the document")
        self._runs = alive
        if len(alive) < 2:
            return alive
        # A range spans from its first to its last run, so content inserted inside it belongs to it.
        all_runs = paragraph_runs(self._p)
        return all_runs[all_runs.index(alive[0]) : all_runs.index(alive[-1]) + 1]

    def _start(self) -> Position:
        runs = self._current_runs()
        if runs:
            return (runs[0], False)
        return self._checked_point()

    def _end(self) -> Position:
        runs = self._current_runs()
        if runs:
            return (runs[-1], True)
        return self._checked_point()

    def _checked_point(self) -> Position:
        if self._point is None:
            raise HostRejectedError(self.description, "empty range has no position")
        anchor, _ = self._point
        if anchor is not None and not is_attached(anchor, self._p):
            raise HostRejectedError(self.description, "anchor is no longer in the document")
        return self._point

    def _boundary(self, position: Position, all_runs: List) -> int:
        anchor, after = position
        if anchor is None:
            return len(all_runs) if after else 0
        for i, run in enumerate(all_runs):
            if run is anchor:
                return i + 1 if after else i
        raise HostRejectedError(self.description, "anchor is no longer in the document")

    def _style_source(self, position: Position):
        anchor, after = position
        if anchor is not None:
            return anchor
        runs = paragraph_runs(self._p)
        if not runs:
            return None
        return runs[-1] if after else runs[0]

    def _layout(self) -> Layout:
        layout = []
        offset = 0
        for run in self._current_runs():
            if is_deleted_run(run):
                continue
            length = len(get_run_text(run))
            layout.append((run, offset, offset + length))
            offset += length
        return layout

    def _text(self) -> str:
        return "".join(get_run_text(run) for run, _, _ in self._layout())

    def _clear(self):
        for run in list(self._current_runs()):
            self.document.delete_run(run)

    def _carve(self, spans: List[Tuple[int, int]], label: str) -> List["DocRange"]:
        """Splits runs at every span boundary and returns one range per span."""
        cuts = {pos for span in spans for pos in span}
        for run, start, end in self._layout():
            inner = sorted((c for c in cuts if start < c < end), reverse=True)
            if not inner:
                continue
            if has_special_content(run):
                raise HostRejectedError(label, "cannot split a run holding embedded objects")
            for cut in inner:
                new_run = split_run_element(run, cut - start)
                self.document._on_split(run, new_run)

        layout = self._layout()
        text = "".join(get_run_text(run) for run, _, _ in layout)
        results = []
        for start, end in spans:
            rng = DocRange(self.context, self._p, label)
            rng._bind([run for run, a, b in layout if a >= start and b <= end and b > a])
            rng._loaded_text = text[start:end]
            results.append(rng)
        return results


class ParagraphRange(DocRange):
    """The whole content of a paragraph, re-read on every use."""

    def __init__(self, context: RequestContext, p_element, description: str = "paragraph"):
        super().__init__(context, p_element, description)
        self._resolved = True

    def _current_runs(self) -> List:
        self._check_paragraph()
        return paragraph_runs(self._p)

    def _start(self) -> Position:
        self._check_paragraph()
        return (None, False)

    def _end(self) -> Position:
        self._check_paragraph()
        return (None, True)

    def _follow_split(self, old_run, new_run):
        pass

    def _adopt(self, run, front: bool):
        pass

    def _clear(self):
        self._check_paragraph()
        if self.document.tracking:
            for run in paragraph_runs(self._p):
                self.document.delete_run(run)
        else:
            self.document.clear_paragraph(self._p)


class HostParagraph:
    """Handle to a body paragraph (a block)."""

    def __init__(self, context: RequestContext, p_element):
        self.context = context
        self.document = context.document
        self._p = p_element

    def get_range(self, location: RangeLocation = RangeLocation.WHOLE) -> DocRange:
        whole = ParagraphRange(self.context, self._p)
        if location == RangeLocation.WHOLE:
            return whole
        return whole.get_range(location)

    def load_text(self) -> Pending[str]:
        def action():
            if not is_attached(self._p, self.document.doc.element):
                raise HostRejectedError("paragraph.text", "paragraph is no longer in the document")
            return self.document.visible_text(self._p)

        return self.context.enqueue("paragraph.text", action, want_result=True)

    def delete(self):
        self.context.enqueue("paragraph.delete()", lambda: self.document.remove_paragraph(self._p))

    @property
    def element(self):
        return self._p

