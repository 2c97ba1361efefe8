import argparse
import json
import sys
from io import BytesIO
from pathlib import Path

from trackdiff import __version__
from trackdiff.config import ReviewConfig
from trackdiff.diff import diff, serialize_diff
from trackdiff.errors import TrackDiffError
from trackdiff.host.document import HostDocument
from trackdiff.models import DiffOpKind, Granularity
from trackdiff.review import PromptLibrary, ReviewService, apply_revision


def _load_document(path: Path, author: str = "trackdiff") -> HostDocument:
    if not path.exists():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)
    with open(path, "rb") as f:
        return HostDocument.from_stream(BytesIO(f.read()), author=author)


def _read_text(path: Path) -> str:
    if path.suffix.lower() == ".docx":
        doc = _load_document(path)
        return "\n".join(doc.visible_text(p) for p in doc.paragraph_elements())
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _save_document(doc: HostDocument, source: Path, output, suffix: str) -> Path:
    output_path = output
    if not output_path:
        if source.stem.endswith(suffix):
            output_path = source
        else:
            output_path = source.with_name(f"{source.stem}{suffix}.docx")
    with open(output_path, "wb") as f:
        f.write(doc.save_to_stream().getvalue())
    return output_path


def _config_from_args(args) -> ReviewConfig:
    return ReviewConfig.load(
        path=getattr(args, "config", None),
        ollama_url=getattr(args, "url", None),
        model=getattr(args, "model", None),
        author=getattr(args, "author", None),
        track_changes=False if getattr(args, "no_track", False) else None,
        fallback_granularity=getattr(args, "fallback_granularity", None),
        fallback_strategy=getattr(args, "fallback_strategy", None),
    )


def handle_extract(args):
    doc = _load_document(args.input)
    lines = []
    for i, p in enumerate(doc.paragraph_elements()):
        text = doc.original_text(p) if args.original else doc.visible_text(p)
        lines.append(f"[{i}] {text}" if args.numbered else text)
    output = "\n".join(lines)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(output)
        print(f"Extracted text to {args.output}", file=sys.stderr)
    else:
        print(output)


def handle_diff(args):
    ops = diff(_read_text(args.original), _read_text(args.modified), Granularity(args.granularity))

    if args.json:
        print(json.dumps(serialize_diff(ops), ensure_ascii=False))
        return

    changes = [o for o in ops if o.op != DiffOpKind.EQUAL]
    print(f"Found {len(changes)} changes:", file=sys.stderr)
    for op, text in changes:
        marker = "[-]" if op == DiffOpKind.DELETE else "[+]"
        print(f"{marker} {text!r}")


def handle_apply(args):
    config = _config_from_args(args)
    doc = _load_document(args.original, author=config.author)

    if args.text is not None:
        revised = args.text
    else:
        with open(args.revised, "r", encoding="utf-8") as f:
            revised = f.read().rstrip("\n")

    print(f"Applying revision to paragraph {args.paragraph}...", file=sys.stderr)
    result = apply_revision(doc, args.paragraph, revised, config)
    output_path = _save_document(doc, args.original, args.output, "_redlined")

    print(f"✅ Saved to {output_path}", file=sys.stderr)
    print(f"Stats: strategy={result.strategy}, {result.deleted} deletions, {result.inserted} insertions.", file=sys.stderr)
    if result.used_fallback:
        print(f"⚠️  Fell back after: {result.primary_error}", file=sys.stderr)


def handle_review(args):
    config = _config_from_args(args)
    doc = _load_document(args.input, author=config.author)

    if args.instruction:
        instruction = args.instruction
    else:
        library = PromptLibrary.load(args.prompts) if args.prompts else PromptLibrary()
        instruction = library.get(args.prompt).template

    service = ReviewService(config)
    print(f"Sending paragraph {args.paragraph} to {config.model}...", file=sys.stderr)
    result = service.review_paragraph(doc, args.paragraph, instruction)
    output_path = _save_document(doc, args.input, args.output, "_reviewed")

    print(f"✅ Changes applied ({result.strategy}). Saved to {output_path}", file=sys.stderr)


def handle_prompts(args):
    library = PromptLibrary.load(args.prompts) if args.prompts else PromptLibrary()
    for prompt in library.prompts:
        print(f"{prompt.id}\t{prompt.name}\t{prompt.description or ''}")


def handle_accept(args):
    doc = _load_document(args.input)
    if args.reject:
        doc.reject_all_revisions()
        suffix = "_rejected"
    else:
        doc.accept_all_revisions()
        suffix = "_clean"
    output_path = _save_document(doc, args.input, args.output, suffix)
    print(f"✅ Saved to {output_path}", file=sys.stderr)


def main():
    parser = argparse.ArgumentParser(prog="trackdiff", description="Apply text revisions to DOCX as tracked changes")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Subcommands")

    p_extract = subparsers.add_parser("extract", help="Extract paragraph text from a DOCX file")
    p_extract.add_argument("input", type=Path, help="Input DOCX file")
    p_extract.add_argument("-o", "--output", type=Path, help="Output file (default: stdout)")
    p_extract.add_argument("-n", "--numbered", action="store_true", help="Prefix each paragraph with its index")
    p_extract.add_argument("--original", action="store_true", help="Show text with all tracked changes rejected")
    p_extract.set_defaults(func=handle_extract)

    p_diff = subparsers.add_parser("diff", help="Word-level diff of two files (DOCX or text)")
    p_diff.add_argument("original", type=Path, help="Original DOCX or text file")
    p_diff.add_argument("modified", type=Path, help="Modified DOCX or text file")
    p_diff.add_argument("--json", action="store_true", help="Output the [[op, text], ...] script")
    p_diff.add_argument(
        "--granularity", choices=[g.value for g in Granularity], default=Granularity.TOKEN.value, help="Diff unit"
    )
    p_diff.set_defaults(func=handle_diff)

    def add_apply_options(p):
        p.add_argument("-p", "--paragraph", type=int, required=True, help="Index of the body paragraph to revise")
        p.add_argument("-o", "--output", type=Path, help="Output DOCX path")
        p.add_argument("--config", type=Path, help="JSON settings file")
        p.add_argument(
            "--author",
            type=str,
            help="Author name for Track Changes (default: settings file, TRACKDIFF_AUTHOR, then the login name)",
        )
        p.add_argument("--no-track", action="store_true", help="Apply without recording tracked changes")
        p.add_argument("--fallback-granularity", choices=[g.value for g in Granularity], help="Replay diff unit")
        p.add_argument("--fallback-strategy", choices=["replay", "block"], help="Secondary strategy")

    p_apply = subparsers.add_parser("apply", help="Apply a revised text to one paragraph")
    p_apply.add_argument("original", type=Path, help="Original DOCX")
    source = p_apply.add_mutually_exclusive_group(required=True)
    source.add_argument("-r", "--revised", type=Path, help="File holding the revised paragraph text")
    source.add_argument("-t", "--text", type=str, help="Revised paragraph text")
    add_apply_options(p_apply)
    p_apply.set_defaults(func=handle_apply)

    p_review = subparsers.add_parser("review", help="Revise one paragraph with the model")
    p_review.add_argument("input", type=Path, help="Input DOCX")
    instruction = p_review.add_mutually_exclusive_group(required=True)
    instruction.add_argument("--prompt", type=str, help="Prompt id from the library (e.g. legal-review)")
    instruction.add_argument("--instruction", type=str, help="Instruction text; {selection} marks the paragraph")
    p_review.add_argument("--prompts", type=Path, help="Prompt library JSON file")
    p_review.add_argument("--url", type=str, help="Ollama server URL")
    p_review.add_argument("--model", type=str, help="Model name")
    add_apply_options(p_review)
    p_review.set_defaults(func=handle_review)

    p_prompts = subparsers.add_parser("prompts", help="List available prompts")
    p_prompts.add_argument("--prompts", type=Path, help="Prompt library JSON file")
    p_prompts.set_defaults(func=handle_prompts)

    p_accept = subparsers.add_parser("accept", help="Accept (or reject) all tracked changes")
    p_accept.add_argument("input", type=Path, help="Input DOCX")
    p_accept.add_argument("-o", "--output", type=Path, help="Output DOCX path")
    p_accept.add_argument("--reject", action="store_true", help="Reject all changes instead")
    p_accept.set_defaults(func=handle_accept)

    args = parser.parse_args()
    try:
        args.func(args)
    except (TrackDiffError, KeyError, IndexError) as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
