import base64
import json
from pathlib import Path

import pytest

import mdinline.cli as cli


def _write_test_png(path: Path, *, width: int, height: int) -> None:
    from PIL import Image

    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (width, height), color=(200, 10, 10)).save(path)


def _create_minimal_markdown_source(tmp_path: Path) -> Path:
    source_dir = tmp_path / "site"
    _write_test_png(source_dir / "img" / "photo.png", width=10, height=10)
    (source_dir / "img" / "chart.svg").write_text(
        '<?xml version="1.0" encoding="UTF-8"?>\n<svg viewBox="0 0 2 2"><rect width="2" height="2"></rect></svg>\n',
        encoding="utf-8",
    )
    (source_dir / "index.md").write_text(
        "# Section 1\n\n"
        "Intro   text\nspanning lines.\n\n"
        "![photo](img/photo.png)\n\n"
        "![chart](img/chart.svg)\n\n"
        "| Col1 | Col2 |\n|------|------|\n| A    | B    |\n\n"
        "```\n  keep   this\n```\n",
        encoding="utf-8",
    )
    return source_dir


def test_version_flags_print_version(capsys):
    assert cli.main(["--version"]) == 0
    out = capsys.readouterr().out.strip()
    assert out == cli.__version__

    assert cli.main(["--ver"]) == 0
    out = capsys.readouterr().out.strip()
    assert out == cli.__version__


def test_help_shows_usage(capsys):
    assert cli.main(["--help"]) == 0
    out = capsys.readouterr().out
    assert "mdinline" in out
    assert cli.__version__ in out


def test_unknown_option_shows_usage(capsys):
    assert cli.main(["--bogus"]) == 2
    assert "Usage:" in capsys.readouterr().out


def test_missing_root_returns_invalid_args(tmp_path, capsys):
    assert cli.main(["--root", str(tmp_path / "nope")]) == 6
    assert "Root directory not found" in capsys.readouterr().err


def test_batch_conversion_writes_html_next_to_markdown(tmp_path):
    source_dir = _create_minimal_markdown_source(tmp_path)

    assert cli.main(["--root", str(source_dir)]) == 0

    html = (source_dir / "index.html").read_text(encoding="utf-8")
    png_b64 = base64.b64encode((source_dir / "img" / "photo.png").read_bytes()).decode("ascii")
    assert f"data:image/png;base64,{png_b64}" in html
    assert "img/photo.png" not in html
    assert '<svg viewBox="0 0 2 2"><rect width="2" height="2"></rect></svg>' in html
    assert "chart.svg" not in html
    assert "<p>Intro text spanning lines.</p>" in html
    assert "<th>Col1</th>" in html
    assert "<pre><code>  keep   this\n</code></pre>" in html


def test_root_defaults_to_environment_variable(monkeypatch, tmp_path):
    source_dir = _create_minimal_markdown_source(tmp_path)
    monkeypatch.setenv(cli.ROOT_ENV, str(source_dir))

    assert cli.main(["--output-extension", "htm"]) == 0
    assert (source_dir / "index.htm").exists()


def test_single_file_prints_html(tmp_path, capsys):
    source_dir = _create_minimal_markdown_source(tmp_path)

    assert cli.main(["--root", str(source_dir), "--file", "index.md"]) == 0

    out = capsys.readouterr().out
    assert "<h1>Section 1</h1>" in out
    assert not (source_dir / "index.html").exists()


def test_failed_document_returns_conversion_exit_code(tmp_path, capsys):
    source_dir = tmp_path / "site"
    source_dir.mkdir()
    (source_dir / "good.md").write_text("fine\n", encoding="utf-8")
    (source_dir / "bad.md").write_text("![x](images\\a.png)\n", encoding="utf-8")

    assert cli.main(["--root", str(source_dir), "--verbose"]) == 10

    assert (source_dir / "good.html").exists()
    assert not (source_dir / "bad.html").exists()
    assert "1 failure(s)" in capsys.readouterr().out


def test_single_file_failure_returns_conversion_exit_code(tmp_path, capsys):
    source_dir = tmp_path / "site"
    source_dir.mkdir()
    (source_dir / "bad.md").write_text("![x](/abs/a.png)\n", encoding="utf-8")

    assert cli.main(["--root", str(source_dir), "--file", "bad.md"]) == 10
    assert "absolute" in capsys.readouterr().err


def test_write_params_and_use_params_file(tmp_path, capsys):
    params_path = tmp_path / "params.json"
    assert cli.main(["--write-params", str(params_path)]) == 0
    assert json.loads(params_path.read_text(encoding="utf-8")) == {
        "input_extension": "md",
        "output_extension": "html",
        "include_artifact_mapping": False,
    }

    params_path.write_text(
        json.dumps({"input_extension": "markdown", "output_extension": "xhtml", "include_artifact_mapping": True}),
        encoding="utf-8",
    )
    source_dir = tmp_path / "site"
    source_dir.mkdir()
    (source_dir / "doc.markdown").write_text("hello\n", encoding="utf-8")
    (source_dir / "skip.md").write_text("skip\n", encoding="utf-8")

    assert cli.main(["--root", str(source_dir), "--params", str(params_path)]) == 0

    assert (source_dir / "doc.xhtml").exists()
    assert not (source_dir / "skip.xhtml").exists()
    assert "doc.markdown -> doc.xhtml" in capsys.readouterr().out


@pytest.mark.parametrize("content", ["not json", '{"input_extension": "md"}'])
def test_invalid_params_file_returns_invalid_args(tmp_path, capsys, content):
    params_path = tmp_path / "params.json"
    params_path.write_text(content, encoding="utf-8")

    assert cli.main(["--root", str(tmp_path), "--params", str(params_path)]) == 6
    assert "params" in capsys.readouterr().err.lower()
