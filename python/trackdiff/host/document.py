import datetime
import weakref
from copy import deepcopy
from io import BytesIO
from typing import TYPE_CHECKING, Iterator, List, Optional, Tuple

import structlog
from docx import Document
from docx.document import Document as DocumentObject
from docx.oxml.ns import nsmap, qn

from trackdiff.host.context import ChangeTrackingMode, RequestContext
from trackdiff.utils.docx import (
    create_attribute,
    create_element,
    get_run_text,
    is_deleted_run,
    mark_run_deleted,
    normalize_docx,
    paragraph_runs,
    set_run_text,
)

if TYPE_CHECKING:
    from trackdiff.host.ranges import DocRange, HostParagraph

logger = structlog.get_logger(__name__)

# Register w16du namespace for dateUtc
w16du_ns = "http://schemas.microsoft.com/office/word/2023/wordml/word16du"
if "w16du" not in nsmap:
    nsmap["w16du"] = w16du_ns

# (run element or None, after). None means the paragraph start (after=False) or end (after=True).
Position = Tuple[Optional[object], bool]


class HostDocument:
    """
    A .docx document exposed through the batched host model.

    Owns the tracked-change XML (w:ins / w:del), the document-wide change tracking
    mode and the registry of live range handles that must follow run splits.
    """

    def __init__(self, doc: DocumentObject, author: str = "trackdiff", normalize: bool = True):
        self.doc = doc
        if normalize:
            normalize_docx(self.doc)
        self.author = author
        self.timestamp = (
            datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")
        )
        self.current_id = self._scan_existing_ids()
        self.change_tracking_mode = ChangeTrackingMode.OFF
        self._live_ranges: "weakref.WeakSet[DocRange]" = weakref.WeakSet()

    @classmethod
    def from_stream(cls, stream: BytesIO, author: str = "trackdiff") -> "HostDocument":
        return cls(Document(stream), author=author)

    def save_to_stream(self) -> BytesIO:
        output = BytesIO()
        self.doc.save(output)
        output.seek(0)
        return output

    def new_context(self) -> RequestContext:
        return RequestContext(self)

    @property
    def tracking(self) -> bool:
        return self.change_tracking_mode == ChangeTrackingMode.TRACK_ALL

    # --- Addressing ---

    def paragraph_elements(self) -> List:
        return list(self.doc.element.body.iterchildren(qn("w:p")))

    def paragraph(self, context: RequestContext, index: int) -> "HostParagraph":
        from trackdiff.host.ranges import HostParagraph

        elements = self.paragraph_elements()
        if not 0 <= index < len(elements):
            raise IndexError(f"Paragraph {index} out of range (document has {len(elements)})")
        return HostParagraph(context, elements[index])

    def paragraphs(self, context: RequestContext) -> Iterator["HostParagraph"]:
        from trackdiff.host.ranges import HostParagraph

        for element in self.paragraph_elements():
            yield HostParagraph(context, element)

    def add_paragraph(self, context: RequestContext, text: str = "") -> "HostParagraph":
        """Appends a paragraph immediately (document setup, not a queued request)."""
        from trackdiff.host.ranges import HostParagraph

        return HostParagraph(context, self.doc.add_paragraph(text)._p)

    # --- Live range registry ---

    def _register(self, rng: "DocRange"):
        self._live_ranges.add(rng)

    def _on_split(self, old_run, new_run):
        for rng in list(self._live_ranges):
            rng._follow_split(old_run, new_run)

    # --- Track change tags ---

    def _scan_existing_ids(self) -> int:
        """
        Scans the document body for existing w:id attributes in w:ins and w:del
        so new IDs do not collide.
        """
        max_id = 0
        for tag in ["w:ins", "w:del"]:
            for el in self.doc.element.xpath(f"//{tag}"):
                try:
                    val = int(el.get(qn("w:id")))
                    if val > max_id:
                        max_id = val
                except (ValueError, TypeError):
                    pass
        return max_id

    def _get_next_id(self):
        self.current_id += 1
        return str(self.current_id)

    def _create_track_change_tag(self, tag_name: str):
        tag = create_element(tag_name)
        create_attribute(tag, "w:id", self._get_next_id())
        create_attribute(tag, "w:author", self.author)
        create_attribute(tag, "w:date", self.timestamp)
        create_attribute(tag, "w16du:dateUtc", self.timestamp)
        return tag

    def _clone_wrapper(self, wrapper):
        local_name = wrapper.tag.split("}")[1]
        clone = create_element(f"w:{local_name}")
        for key, value in wrapper.attrib.items():
            clone.set(key, value)
        create_attribute(clone, "w:id", self._get_next_id())
        return clone

    # --- Mutation primitives (called while a batch is synchronised) ---

    def insert_run(self, p_element, text: str, position: Position, style_source=None):
        """
        Creates a run holding `text` at `position`, wrapped in w:ins when tracking.
        Returns the new w:r element.
        """
        run = create_element("w:r")
        if style_source is not None:
            rPr = style_source.find(qn("w:rPr"))
            if rPr is not None:
                run.append(deepcopy(rPr))
        set_run_text(run, text)

        node = run
        if self.tracking:
            node = self._create_track_change_tag("w:ins")
            node.append(run)

        self._place(p_element, node, position)
        return run

    def delete_run(self, run):
        """Deletes one run: tracked (w:del) or removed, depending on the tracking mode."""
        parent = run.getparent()
        if is_deleted_run(run):
            # Already a tracked deletion; with tracking off the deleted text is dropped for good.
            if not self.tracking:
                if parent.tag == qn("w:del"):
                    self._remove_from_wrapper(run)
                else:
                    parent.remove(run)
            return

        if parent.tag == qn("w:ins"):
            # Deleting tracked inserted text drops the insertion itself.
            self._remove_from_wrapper(run)
            return

        if not self.tracking:
            parent.remove(run)
            return

        del_tag = self._create_track_change_tag("w:del")
        run.addprevious(del_tag)
        del_tag.append(run)
        mark_run_deleted(run, True)

    def clear_paragraph(self, p_element):
        """Removes all content of a paragraph, keeping its properties."""
        for child in list(p_element):
            if child.tag != qn("w:pPr"):
                p_element.remove(child)

    def remove_paragraph(self, p_element):
        """
        Block deletion. Tracked: every run and the paragraph mark are marked deleted.
        Untracked: the paragraph element is dropped. Sibling blocks are untouched.
        """
        if not self.tracking:
            parent = p_element.getparent()
            if parent is None:
                raise ValueError("paragraph is no longer in the document")
            parent.remove(p_element)
            return

        for run in paragraph_runs(p_element):
            self.delete_run(run)

        pPr = p_element.find(qn("w:pPr"))
        if pPr is None:
            pPr = create_element("w:pPr")
            p_element.insert(0, pPr)
        rPr = pPr.find(qn("w:rPr"))
        if rPr is None:
            rPr = create_element("w:rPr")
            pPr.append(rPr)
        rPr.append(self._create_track_change_tag("w:del"))

    def _remove_from_wrapper(self, run):
        wrapper = run.getparent()
        wrapper.remove(run)
        if not any(child.tag == qn("w:r") for child in wrapper):
            wrapper.getparent().remove(wrapper)

    def _place(self, p_element, node, position: Position):
        anchor, after = position
        if anchor is None:
            if after:
                p_element.append(node)
            else:
                pPr = p_element.find(qn("w:pPr"))
                p_element.insert(0 if pPr is None else p_element.index(pPr) + 1, node)
            return

        target = self._placement_target(anchor, after)
        if after:
            target.addnext(node)
        else:
            target.addprevious(node)

    def _placement_target(self, run, after: bool):
        """
        The element new content is placed next to. Runs inside w:ins / w:del cannot
        take siblings of another change type, so the wrapper is split around them.
        """
        wrapper = run.getparent()
        if wrapper.tag not in (qn("w:ins"), qn("w:del")):
            return run

        children = list(wrapper)
        pos = children.index(run)
        if after and pos == len(children) - 1:
            return wrapper
        if not after and pos == 0:
            return wrapper

        moving = children[pos + 1 :] if after else children[pos:]
        clone = self._clone_wrapper(wrapper)
        for child in moving:
            clone.append(child)
        wrapper.addnext(clone)
        # New content goes between the two halves either way.
        return wrapper if after else clone

    # --- Views ---

    def visible_text(self, p_element) -> str:
        """Current text with insertions shown and deletions hidden."""
        return "".join(get_run_text(r) for r in paragraph_runs(p_element) if not is_deleted_run(r))

    def original_text(self, p_element) -> str:
        """Text as it reads with every tracked change rejected."""
        return "".join(
            get_run_text(r) for r in paragraph_runs(p_element) if r.getparent().tag != qn("w:ins")
        )

    def has_revisions(self) -> bool:
        return bool(self.doc.element.xpath("//w:ins | //w:del"))

    # --- Review ---

    def accept_all_revisions(self):
        """
        Accepts all tracked changes: insertions are unwrapped, deletions removed.
        Paragraphs whose mark was deleted and which are now empty are dropped.
        """
        for ins in self.doc.element.xpath("//w:p/w:ins | //w:hyperlink/w:ins"):
            parent = ins.getparent()
            index = parent.index(ins)
            for child in list(ins):
                parent.insert(index, child)
                index += 1
            parent.remove(ins)

        for d in self.doc.element.xpath("//w:p/w:del | //w:hyperlink/w:del"):
            d.getparent().remove(d)

        for mark in self.doc.element.xpath("//w:pPr/w:rPr/w:del"):
            p_element = mark.getparent().getparent().getparent()
            mark.getparent().remove(mark)
            if not paragraph_runs(p_element) and p_element.getparent() is not None:
                p_element.getparent().remove(p_element)

        for mark in self.doc.element.xpath("//w:pPr/w:rPr/w:ins"):
            mark.getparent().remove(mark)

    def reject_all_revisions(self):
        """Rejects all tracked changes: insertions removed, deletions restored."""
        for ins in self.doc.element.xpath("//w:p/w:ins | //w:hyperlink/w:ins"):
            ins.getparent().remove(ins)

        for d in self.doc.element.xpath("//w:p/w:del | //w:hyperlink/w:del"):
            parent = d.getparent()
            index = parent.index(d)
            for child in list(d):
                if child.tag == qn("w:r"):
                    mark_run_deleted(child, False)
                parent.insert(index, child)
                index += 1
            parent.remove(d)

        for mark in self.doc.element.xpath("//w:pPr/w:rPr/w:del"):
            mark.getparent().remove(mark)
