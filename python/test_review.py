"""
Tests for the review layer — settings, prompt library, model client, review service and CLI.

Run: python3 test_review.py
From: python/
"""

import getpass
import io
import json
import os
import sys
import tempfile
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

sys.path.insert(0, '.')

import httpx
from docx import Document
from docx.oxml.ns import qn

from trackdiff import cli
from trackdiff.config import ReviewConfig
from trackdiff.diff import diff, serialize_diff
from trackdiff.errors import InputError, UpstreamError
from trackdiff.host.context import ChangeTrackingMode
from trackdiff.host.document import HostDocument
from trackdiff.llm import OllamaClient
from trackdiff.models import Granularity, Prompt, render_prompt
from trackdiff.review import PromptLibrary, ReviewService, build_controller
from trackdiff.redline.strategies import BlockReplaceStrategy, CursorReplayStrategy


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _expect(exc_type, fn, *args, **kwargs):
    try:
        fn(*args, **kwargs)
    except exc_type as e:
        return e
    raise AssertionError(f"{exc_type.__name__} not raised")


def _client(handler, **config):
    return OllamaClient(ReviewConfig(**config), transport=httpx.MockTransport(handler))


def _model_returning(text, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(200, json={"model": "test", "response": text, "done": True})

    return handler


def _write_docx(path, *texts):
    doc = Document()
    for text in texts:
        doc.add_paragraph(text)
    doc.save(str(path))
    return len(doc.paragraphs) - 1


def _last_paragraph(path):
    with open(path, "rb") as f:
        host = HostDocument.from_stream(io.BytesIO(f.read()))
    return host, host.paragraph_elements()[-1]


def _run_cli(*argv):
    """Runs the CLI in-process; returns (exit_code, stdout, stderr)."""
    out, err = io.StringIO(), io.StringIO()
    saved = sys.argv
    sys.argv = ["trackdiff", *argv]
    code = 0
    try:
        with redirect_stdout(out), redirect_stderr(err):
            cli.main()
    except SystemExit as e:
        code = e.code
    finally:
        sys.argv = saved
    return code, out.getvalue(), err.getvalue()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def test_config_precedence():
    with tempfile.TemporaryDirectory() as tmp:
        settings = Path(tmp) / "settings.json"
        settings.write_text(
            json.dumps({"model": "file-model", "timeout": 30, "fallback_granularity": "sentence"}),
            encoding="utf-8",
        )

        config = ReviewConfig.load(path=settings, env={})
        assert config.model == "file-model"
        assert config.timeout == 30.0
        assert config.fallback_granularity == Granularity.SENTENCE
        assert config.ollama_url == "http://localhost:11434"

        env = {"TRACKDIFF_MODEL": "env-model", "TRACKDIFF_TRACK_CHANGES": "false", "UNRELATED": "x"}
        config = ReviewConfig.load(path=settings, env=env)
        assert config.model == "env-model"
        assert config.track_changes is False
        assert config.timeout == 30.0

        config = ReviewConfig.load(path=settings, env=env, model="cli-model", author=None)
        assert config.model == "cli-model"
        assert config.author == getpass.getuser()

        settings.write_text(json.dumps({"author": "FromFile"}), encoding="utf-8")
        assert ReviewConfig.load(path=settings, env={}, author=None).author == "FromFile"
        env = {"TRACKDIFF_AUTHOR": "FromEnv"}
        assert ReviewConfig.load(path=settings, env=env, author=None).author == "FromEnv"
        assert ReviewConfig.load(path=settings, env=env, author="FromFlag").author == "FromFlag"
    print("PASS: config precedence")


def test_config_file_edge_cases():
    with tempfile.TemporaryDirectory() as tmp:
        missing = ReviewConfig.load(path=Path(tmp) / "nope.json", env={})
        assert missing == ReviewConfig()

        broken = Path(tmp) / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        assert ReviewConfig.load(path=broken, env={}) == ReviewConfig()

        target = Path(tmp) / "nested" / "settings.json"
        ReviewConfig(api_key="secret", model="saved-model").save(target)
        stored = json.loads(target.read_text(encoding="utf-8"))
        assert "api_key" not in stored
        assert stored["model"] == "saved-model"
        assert ReviewConfig.load(path=target, env={}).model == "saved-model"
    print("PASS: config file edge cases")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def test_render_prompt():
    assert render_prompt("Fix this: {selection}", "teh cat") == "Fix this: teh cat"
    assert render_prompt("Shorten it.", "long text") == "Shorten it.\n\nlong text"
    print("PASS: render prompt")


def test_prompt_library():
    library = PromptLibrary()
    assert [p.id for p in library.prompts] == ["legal-review", "plain-english"]
    assert "{selection}" in library.get("legal-review").template
    _expect(KeyError, library.get, "missing")

    library.upsert(Prompt(id="tone", name="Tone", template="Make it friendlier: {selection}"))
    library.upsert(Prompt(id="tone", name="Friendly tone", template="Soften: {selection}"))
    assert len(library.prompts) == 3
    assert library.get("tone").name == "Friendly tone"

    library.remove("plain-english")
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "prompts.json"
        library.save(path)
        reloaded = PromptLibrary.load(path)
        assert [p.id for p in reloaded.prompts] == ["legal-review", "tone"]
        assert reloaded.get("tone").render("hi") == "Soften: hi"

        fresh = PromptLibrary.load(Path(tmp) / "absent.json")
        assert [p.id for p in fresh.prompts] == ["legal-review", "plain-english"]
    _expect(ValueError, PromptLibrary().save)
    print("PASS: prompt library")


# ---------------------------------------------------------------------------
# Model client
# ---------------------------------------------------------------------------

def test_generate_request():
    seen = []
    client = _client(_model_returning("Revised.", seen), ollama_url="http://model.local:11434/", api_key="k-123")
    assert client.generate("Improve: text", model="other:7b") == "Revised."
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "http://model.local:11434/api/generate"
    assert request.headers["Authorization"] == "Bearer k-123"
    assert json.loads(request.content) == {"model": "other:7b", "prompt": "Improve: text", "stream": False}

    seen.clear()
    _client(_model_returning("x", seen)).generate("p")
    assert "Authorization" not in seen[0].headers
    assert json.loads(seen[0].content)["model"] == "gpt-oss:20b"
    print("PASS: generate request")


def test_list_models():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "gpt-oss:20b"}, {"name": "llama3:8b"}, {}]})

    assert _client(handler).list_models() == ["gpt-oss:20b", "llama3:8b"]
    print("PASS: list models")


def test_upstream_errors():
    def server_error(request):
        return httpx.Response(500)

    def not_json(request):
        return httpx.Response(200, content=b"<html>oops</html>")

    def no_text(request):
        return httpx.Response(200, json={"done": True})

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    err = _expect(UpstreamError, _client(server_error).generate, "p")
    assert str(err) == "HTTP 500: Internal Server Error"
    err = _expect(UpstreamError, _client(not_json).generate, "p")
    assert str(err).startswith("Parse error:")
    _expect(UpstreamError, _client(no_text).generate, "p")
    err = _expect(UpstreamError, _client(refused).generate, "p")
    assert str(err).startswith("Network error:")
    err = _expect(UpstreamError, _client(slow, timeout=2.5).generate, "p")
    assert str(err) == "Request timeout after 2.5s"
    print("PASS: upstream errors")


# ---------------------------------------------------------------------------
# Review service
# ---------------------------------------------------------------------------

def test_suggest_keeps_surrounding_whitespace():
    seen = []
    service = ReviewService(ReviewConfig(), client=_client(_model_returning("\n  Revised clause.  \n", seen)))
    assert service.suggest("  Old clause. ", "Fix: {selection}") == "  Revised clause. "
    assert json.loads(seen[0].content)["prompt"] == "Fix:   Old clause. "

    _expect(InputError, service.suggest, "   ", "Fix it")
    _expect(InputError, service.suggest, "text", " ")
    empty = ReviewService(ReviewConfig(), client=_client(_model_returning("   ")))
    _expect(InputError, empty.suggest, "text", "Fix it")
    print("PASS: suggest keeps surrounding whitespace")


def test_review_paragraph_applies_tracked_changes():
    host = HostDocument(Document(), author="Reviewer")
    context = host.new_context()
    host.add_paragraph(context, "Untouched heading")
    target = host.add_paragraph(context, "The Supplier shall deliver the Goods.")
    index = host.paragraph_elements().index(target.element)

    service = ReviewService(
        ReviewConfig(author="Reviewer"),
        client=_client(_model_returning("The Supplier must deliver the Goods.")),
    )
    result = service.review_paragraph(host, index, "Tighten: {selection}")

    assert not result.used_fallback
    assert result.deleted == 1 and result.inserted == 1
    assert host.visible_text(target.element) == "The Supplier must deliver the Goods."
    assert host.original_text(target.element) == "The Supplier shall deliver the Goods."
    assert target.element.find(qn("w:ins")).get(qn("w:author")) == "Reviewer"
    assert host.visible_text(host.paragraph_elements()[index - 1]) == "Untouched heading"
    print("PASS: review paragraph applies tracked changes")


def test_build_controller_follows_config():
    replay = build_controller(ReviewConfig())
    assert isinstance(replay.secondary, CursorReplayStrategy)
    assert replay.fallback_granularity == Granularity.TOKEN
    assert replay.mode == ChangeTrackingMode.TRACK_ALL

    block = build_controller(ReviewConfig(fallback_strategy="block", track_changes=False))
    assert isinstance(block.secondary, BlockReplaceStrategy)
    assert block.mode == ChangeTrackingMode.OFF
    print("PASS: build controller follows config")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def test_cli_diff_json():
    with tempfile.TemporaryDirectory() as tmp:
        original = Path(tmp) / "a.txt"
        modified = Path(tmp) / "b.txt"
        original.write_text("Start End", encoding="utf-8")
        modified.write_text("Start Middle End", encoding="utf-8")

        code, out, _ = _run_cli("diff", str(original), str(modified), "--json")
        assert code == 0
        assert json.loads(out) == serialize_diff(diff("Start End", "Start Middle End"))
    print("PASS: cli diff --json")


def test_cli_apply_and_accept():
    original = "Payment is due within 30 days."
    revised = "Payment is due within 45 days."
    with tempfile.TemporaryDirectory() as tmp:
        source = Path(tmp) / "contract.docx"
        index = _write_docx(source, "Heading", original)
        settings = Path(tmp) / "no-settings.json"

        code, _, err = _run_cli(
            "apply", str(source), "-p", str(index), "-t", revised, "--author", "Tester", "--config", str(settings)
        )
        assert code == 0, err
        redlined = Path(tmp) / "contract_redlined.docx"
        assert redlined.exists()

        host, p = _last_paragraph(redlined)
        assert host.visible_text(p) == revised
        assert host.original_text(p) == original
        assert p.find(qn("w:ins")).get(qn("w:author")) == "Tester"

        clean = Path(tmp) / "clean.docx"
        code, _, _ = _run_cli("accept", str(redlined), "-o", str(clean))
        assert code == 0
        host, p = _last_paragraph(clean)
        assert not host.has_revisions()
        assert host.visible_text(p) == revised

        code, out, _ = _run_cli("extract", str(redlined), "-n", "--original")
        assert code == 0
        assert f"[{index}] {original}" in out.splitlines()
    print("PASS: cli apply and accept")


def test_cli_author_from_settings_file():
    with tempfile.TemporaryDirectory() as tmp:
        source = Path(tmp) / "contract.docx"
        index = _write_docx(source, "The quick brown fox jumps")
        settings = Path(tmp) / "settings.json"
        settings.write_text(json.dumps({"author": "FromConfig"}), encoding="utf-8")
        output = Path(tmp) / "out.docx"

        saved = os.environ.pop("TRACKDIFF_AUTHOR", None)
        try:
            code, _, err = _run_cli(
                "apply", str(source), "-p", str(index), "-t", "The quick red fox jumps",
                "--config", str(settings), "-o", str(output),
            )
        finally:
            if saved is not None:
                os.environ["TRACKDIFF_AUTHOR"] = saved
        assert code == 0, err

        _, p = _last_paragraph(output)
        assert p.find(qn("w:ins")).get(qn("w:author")) == "FromConfig"
        assert p.find(qn("w:del")).get(qn("w:author")) == "FromConfig"
    print("PASS: cli author from settings file")


def test_cli_reports_errors():
    with tempfile.TemporaryDirectory() as tmp:
        source = Path(tmp) / "contract.docx"
        _write_docx(source, "Only paragraph")
        code, _, err = _run_cli("apply", str(source), "-p", "99", "-t", "x", "--config", str(Path(tmp) / "s.json"))
        assert code == 1
        assert "out of range" in err

        code, _, err = _run_cli("extract", str(Path(tmp) / "missing.docx"))
        assert code == 1
        assert "File not found" in err
    print("PASS: cli reports errors")


if __name__ == "__main__":
    tests = [
        test_config_precedence,
        test_config_file_edge_cases,
        test_render_prompt,
        test_prompt_library,
        test_generate_request,
        test_list_models,
        test_upstream_errors,
        test_suggest_keeps_surrounding_whitespace,
        test_review_paragraph_applies_tracked_changes,
        test_build_controller_follows_config,
        test_cli_diff_json,
        test_cli_apply_and_accept,
        test_cli_author_from_settings_file,
        test_cli_reports_errors,
    ]

    passed = 0
    failed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"FAIL: {test.__name__}: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print(f"\n{'='*60}")
    print(f"Results: {passed} passed, {failed} failed out of {len(tests)} tests")
    if failed == 0:
        print("ALL TESTS PASSED")
    else:
        print("SOME TESTS FAILED")
