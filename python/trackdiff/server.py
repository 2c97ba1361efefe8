import json
import logging
import sys
from io import BytesIO
from pathlib import Path
from typing import Optional

import structlog
from mcp.server.fastmcp import FastMCP

from trackdiff.config import ReviewConfig
from trackdiff.diff import diff, serialize_diff
from trackdiff.host.document import HostDocument
from trackdiff.models import Granularity
from trackdiff.review import apply_revision

# --- LOGGING CONFIGURATION ---
# MCP communicates over stdio.
# CRITICAL: All logs must go to stderr. Any print to stdout will break the JSON-RPC protocol.
logging.basicConfig(stream=sys.stderr, level=logging.INFO, force=True)

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)

mcp = FastMCP("trackdiff Redlining Service")


def _read_file_bytes(path: str) -> BytesIO:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"File not found: {path}")
    with open(p, "rb") as f:
        return BytesIO(f.read())


def _save_stream(stream: BytesIO, path: str):
    with open(path, "wb") as f:
        f.write(stream.getvalue())


@mcp.tool()
def diff_text(original: str, revised: str, granularity: str = "token") -> str:
    """
    Computes a word-level edit script between two texts.

    Returns a JSON list of [op, text] pairs where op is -1 (delete), 0 (equal) or 1 (insert).

    Args:
        original: The text before revision.
        revised: The text after revision.
        granularity: 'token' (words, punctuation, whitespace) or 'sentence'.
    """
    try:
        ops = diff(original, revised, Granularity(granularity))
        return json.dumps(serialize_diff(ops), ensure_ascii=False)
    except Exception as e:
        return f"Error computing diff: {str(e)}"


@mcp.tool()
def read_paragraphs(file_path: str, original_view: bool = False) -> str:
    """
    Lists the body paragraphs of a DOCX file as '[index] text' lines.

    Args:
        file_path: Absolute path to the DOCX file.
        original_view: If True, shows text with all tracked changes rejected.
                       If False (default), shows the current text (insertions shown, deletions hidden).
    """
    try:
        doc = HostDocument.from_stream(_read_file_bytes(file_path))
        lines = []
        for i, p in enumerate(doc.paragraph_elements()):
            text = doc.original_text(p) if original_view else doc.visible_text(p)
            lines.append(f"[{i}] {text}")
        return "\n".join(lines)
    except Exception as e:
        return f"Error reading file: {str(e)}"


@mcp.tool()
def apply_paragraph_revision(
    docx_path: str,
    paragraph_index: int,
    revised_text: str,
    author_name: str,
    output_path: Optional[str] = None,
    fallback_granularity: str = "token",
) -> str:
    """
    Rewrites one paragraph to `revised_text`, recording the difference as Track Changes.

    Only the words that differ are marked as insertions/deletions. If the word-level
    mapping fails, the paragraph is reset and the change is replayed by text search.

    Args:
        docx_path: Absolute path to the source file.
        paragraph_index: Index from read_paragraphs.
        revised_text: The complete new text of the paragraph.
        author_name: Name to appear in Track Changes (e.g., 'Reviewer AI').
        output_path: Optional. If not provided, updates the file in place (if it
        ends in _redlined) or creates a new one.
        fallback_granularity: 'token' or 'sentence' units for the fallback replay.
    """
    try:
        if not author_name or not author_name.strip():
            return "Error: author_name cannot be empty."

        config = ReviewConfig(author=author_name, fallback_granularity=Granularity(fallback_granularity))
        doc = HostDocument.from_stream(_read_file_bytes(docx_path), author=author_name)
        result = apply_revision(doc, paragraph_index, revised_text, config)

        if not output_path:
            p = Path(docx_path)
            if p.stem.endswith("_redlined"):
                output_path = str(p)  # Overwrite if already redlined
            else:
                output_path = str(p.parent / f"{p.stem}_redlined{p.suffix}")

        _save_stream(doc.save_to_stream(), output_path)

        summary = f"Applied revision ({result.strategy}): {result.deleted} deletions, {result.inserted} insertions."
        if result.used_fallback:
            summary += f" Fallback used after: {result.primary_error}."
        return f"{summary} Saved to: {output_path}"

    except Exception as e:
        return f"Error applying revision: {str(e)}"


@mcp.tool()
def accept_all_changes(docx_path: str, output_path: Optional[str] = None, reject: bool = False) -> str:
    """
    Accepts (or, with reject=True, rejects) all tracked changes, creating a clean version.
    """
    try:
        doc = HostDocument.from_stream(_read_file_bytes(docx_path))
        if reject:
            doc.reject_all_revisions()
        else:
            doc.accept_all_revisions()

        if not output_path:
            p = Path(docx_path)
            output_path = str(p.parent / f"{p.stem}_clean{p.suffix}")

        _save_stream(doc.save_to_stream(), output_path)
        return f"{'Rejected' if reject else 'Accepted'} all changes. Saved to: {output_path}"
    except Exception as e:
        return f"Error accepting changes: {str(e)}"


def main():
    mcp.run()


if __name__ == "__main__":
    main()
