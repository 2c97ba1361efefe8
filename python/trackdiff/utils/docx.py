"""
Low-level utilities for manipulating DOCX XML structures.
Run text access, run-level normalisation and paragraph content enumeration.
"""

from copy import deepcopy
from typing import Iterator, List, Union

import structlog
from docx.document import Document as DocumentObject
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.table import Table, _Cell
from docx.text.paragraph import Paragraph
from lxml import etree

logger = structlog.get_logger(__name__)

# Containers a run may sit in directly below a paragraph.
RUN_CONTAINERS = (qn("w:ins"), qn("w:del"), qn("w:hyperlink"))

# Children of w:r that carry text (or are properties) and survive text rewrites.
TEXT_TAGS = {
    qn("w:t"),
    qn("w:tab"),
    qn("w:br"),
    qn("w:cr"),
    qn("w:delText"),
    qn("w:rPr"),
}


def create_element(name: str):
    return OxmlElement(name)


def create_attribute(element, name: str, value: str):
    element.set(qn(name), value)


def get_run_text(r_element: etree._Element) -> str:
    """
    Extracts text from a w:r element, converting <w:tab/> to tabs and <w:br/> to newlines.
    Deleted text (w:delText) is included; callers filter deleted runs themselves.
    """
    text = ""
    for child in r_element:
        if child.tag in (qn("w:t"), qn("w:delText")):
            text += child.text or ""
        elif child.tag == qn("w:tab"):
            text += "\t"
        elif child.tag in (qn("w:br"), qn("w:cr")):
            text += "\n"
    return text


def set_run_text(r_element: etree._Element, text: str, deleted: bool = False):
    """
    Replaces the text content of a w:r element, keeping its w:rPr.
    Tabs and newlines become w:tab / w:br so the run reads back identically.
    """
    for child in list(r_element):
        if child.tag in TEXT_TAGS and child.tag != qn("w:rPr"):
            r_element.remove(child)

    text_tag = "w:delText" if deleted else "w:t"
    buffer = ""

    def flush():
        nonlocal buffer
        if buffer:
            t = create_element(text_tag)
            t.text = buffer
            if buffer.strip() != buffer:
                create_attribute(t, "xml:space", "preserve")
            r_element.append(t)
            buffer = ""

    for char in text:
        if char == "\t":
            flush()
            r_element.append(create_element("w:tab"))
        elif char == "\n":
            flush()
            r_element.append(create_element("w:br"))
        else:
            buffer += char
    flush()


def mark_run_deleted(r_element, deleted: bool):
    """Swaps w:t <-> w:delText in place."""
    src, dst = (qn("w:t"), qn("w:delText")) if deleted else (qn("w:delText"), qn("w:t"))
    for child in r_element.findall(src):
        child.tag = dst


def has_special_content(r_element) -> bool:
    """
    Checks if the run contains elements that are not simple text, which would be lost
    when its text is rewritten (e.g. w:commentReference, w:drawing, w:fldChar).
    """
    for child in r_element:
        if child.tag not in TEXT_TAGS:
            return True
    return False


def split_run_element(r_element: etree._Element, offset: int) -> etree._Element:
    """
    Splits a run at `offset` characters. The original element keeps the left part;
    a copy holding the right part is inserted directly after it and returned.
    """
    text = get_run_text(r_element)
    left_text = text[:offset]
    right_text = text[offset:]

    deleted = r_element.find(qn("w:delText")) is not None
    new_r_element = deepcopy(r_element)
    set_run_text(r_element, left_text, deleted=deleted)
    set_run_text(new_r_element, right_text, deleted=deleted)
    r_element.addnext(new_r_element)
    return new_r_element


def is_deleted_run(r_element: etree._Element) -> bool:
    parent = r_element.getparent()
    if parent is not None and parent.tag == qn("w:del"):
        return True
    return r_element.find(qn("w:delText")) is not None


def is_attached(element, root) -> bool:
    """True while `element` is still inside the tree rooted at `root`."""
    node = element
    while node is not None:
        if node is root:
            return True
        node = node.getparent()
    return False


def paragraph_runs(p_element: etree._Element) -> List[etree._Element]:
    """
    All w:r elements of a paragraph in document order, including runs inside
    tracked insertions/deletions and hyperlinks.
    """
    runs = []
    for child in p_element:
        if child.tag == qn("w:r"):
            runs.append(child)
        elif child.tag in RUN_CONTAINERS:
            runs.extend(sub for sub in child if sub.tag == qn("w:r"))
    return runs


def _are_runs_identical(r1, r2) -> bool:
    """
    Compares two runs to see if they have identical formatting properties.
    """
    rPr1 = r1.find(qn("w:rPr"))
    rPr2 = r2.find(qn("w:rPr"))

    xml1 = rPr1.xml if rPr1 is not None else ""
    xml2 = rPr2.xml if rPr2 is not None else ""

    return xml1 == xml2


def _coalesce_runs_in_paragraph(p_element):
    """
    Merges adjacent plain runs with identical formatting.
    This fixes issues where words are split like ["Con", "tract"] due to editing history.
    Runs inside tracked changes or hyperlinks are left alone.
    """
    children = [c for c in p_element if c.tag == qn("w:r")]
    i = 0
    while i < len(children) - 1:
        current_run = children[i]
        next_run = children[i + 1]

        # Only merge direct siblings; anything in between (bookmarks, ins/del) breaks the run.
        if current_run.getnext() is not next_run:
            i += 1
            continue

        # Do not merge if either run has special content (comments, images, fields).
        if has_special_content(current_run) or has_special_content(next_run):
            i += 1
            continue

        if _are_runs_identical(current_run, next_run):
            # Move content children to preserve w:br, w:tab, etc.
            for child in list(next_run):
                if child.tag == qn("w:rPr"):
                    continue
                current_run.append(child)
            p_element.remove(next_run)
            children.pop(i + 1)
            # Do NOT increment i; check the *new* next_run against current_run
        else:
            i += 1


def normalize_docx(doc: DocumentObject):
    """
    Applies normalization to a DOCX document to make range mapping reliable.
    1. Removes proof errors (spellcheck squiggles).
    2. Coalesces adjacent runs.
    """
    logger.debug("Normalizing DOCX structure")

    for proof_err in doc.element.xpath("//w:proofErr"):
        proof_err.getparent().remove(proof_err)

    for item in iter_block_items(doc):
        if isinstance(item, Paragraph):
            _coalesce_runs_in_paragraph(item._p)
        elif isinstance(item, Table):
            _normalize_table(item)


def _normalize_table(table: Table):
    for row in table.rows:
        for cell in row.cells:
            for item in iter_block_items(cell):
                if isinstance(item, Paragraph):
                    _coalesce_runs_in_paragraph(item._p)
                elif isinstance(item, Table):
                    _normalize_table(item)


def iter_block_items(parent) -> Iterator[Union[Paragraph, Table]]:
    """
    Yields Paragraph or Table objects in the order they appear in the XML.
    Supports Document and Cell objects. Recursion is left to the caller.
    """
    if isinstance(parent, DocumentObject):
        parent_elm = parent.element.body
    elif isinstance(parent, _Cell):
        parent_elm = parent._tc
    elif hasattr(parent, "_element"):
        parent_elm = parent._element
    else:
        raise ValueError(f"Unsupported parent type for iteration: {type(parent)}")

    for child in parent_elm.iterchildren():
        if child.tag == qn("w:p"):
            yield Paragraph(child, parent)
        elif child.tag == qn("w:tbl"):
            yield Table(child, parent)
