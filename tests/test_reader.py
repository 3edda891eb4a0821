import logging

from dependency_audit.constraints import Constraint
from dependency_audit.reader import ManifestReader, logical_lines


def _texts(lines):
    return [text for _, text in logical_lines(lines)]


def test_comment_lines_are_dropped_before_continuations_join():
    lines = [
        "# a full-line comment \\\n",
        "requests>=2.0 \\\n",
        "  ,<3  # trailing comment\n",
        "six\n",
    ]
    assert _texts(lines) == ["requests>=2.0   ,<3", "six"]


def test_trailing_comment_hides_backslash():
    assert _texts(["foo>=1  # see \\\n", "bar\n"]) == ["foo>=1", "bar"]


def test_blank_lines_skipped_and_line_numbers_kept():
    assert list(logical_lines(["\n", "   \n", "foo\n"])) == [(3, "foo")]


def _write(path, text):
    path.write_text(text)
    return path


def test_directives_and_grouping(tmp_path, context, make_registry, caplog, days_ago):
    _write(tmp_path / "base.txt", "Foo_Bar>=1.0\n")
    _write(tmp_path / "constraints.txt", "six==1.16.0\nnot-installed==1.0\nhttps://example.com/c.zip\n")
    manifest = _write(
        tmp_path / "requirements.txt",
        "-r base.txt\n"
        "--constraint constraints.txt\n"
        "-e .\n"
        "--index-url https://mirror.example/simple\n"
        "foo-bar<2\n"
        "six>=1.0\n"
        "this is not a requirement\n"
        "https://example.com/widget-1.2.zip\n",
    )
    registry = make_registry(
        versions={"Foo_Bar": [("1.5", days_ago(400)), ("2.0", days_ago(100))]},
        direct={"https://example.com/widget-1.2.zip": {"name": "widget", "version": "1.2"}},
    )

    with caplog.at_level(logging.WARNING):
        records = list(ManifestReader(manifest, registry=registry, context=context).iter_installed())

    by_name = {r.canonical_name: r for r in records}
    assert set(by_name) == {"foo-bar", "six", "widget"}

    foo = by_name["foo-bar"]
    assert foo.constraints == [Constraint(">=", "1.0"), Constraint("<", "2")]
    assert str(foo.current_version) == "1.5"

    six = by_name["six"]
    assert six.install
    assert str(six.current_version) == "1.16.0"

    widget = by_name["widget"]
    assert widget.url == "https://example.com/widget-1.2.zip"
    assert str(widget.current_version) == "1.2"

    messages = caplog.text
    assert "editable" in messages
    assert "--index-url" in messages
    assert "this is not a requirement" in messages
    assert "constraints file" in messages


def test_constraints_never_set_install_intent(tmp_path, context):
    _write(tmp_path / "constraints.txt", "pinned==1.0\n")
    manifest = _write(tmp_path / "requirements.txt", "-c constraints.txt\n")

    reader = ManifestReader(manifest, context=context)
    records = reader.read()

    assert [r.name for r in records] == ["pinned"]
    assert not records[0].install
    assert list(reader.iter_installed()) == []


def test_include_cycles_are_skipped(tmp_path, context, caplog):
    _write(tmp_path / "a.txt", "-r b.txt\nalpha==1.0\n")
    _write(tmp_path / "b.txt", "-r a.txt\nbeta==2.0\n")

    with caplog.at_level(logging.WARNING):
        records = list(ManifestReader(tmp_path / "a.txt", context=context).iter_constrained())

    assert sorted(r.name for r in records) == ["alpha", "beta"]
    assert "include cycle" in caplog.text


def test_same_file_may_be_included_twice(tmp_path, context, caplog):
    _write(tmp_path / "common.txt", "shared==1.0\n")
    manifest = _write(tmp_path / "requirements.txt", "-c common.txt\n-r common.txt\n")

    with caplog.at_level(logging.WARNING):
        records = ManifestReader(manifest, context=context).read()

    assert [(r.name, r.install) for r in records] == [("shared", True)]
    assert "include cycle" not in caplog.text


def test_missing_include_warns(tmp_path, context, caplog):
    manifest = _write(tmp_path / "requirements.txt", "-r missing.txt\nalpha==1.0\n")

    with caplog.at_level(logging.WARNING):
        records = list(ManifestReader(manifest, context=context).iter_constrained())

    assert [r.name for r in records] == ["alpha"]
    assert "missing.txt" in caplog.text


def test_unnamed_url_without_metadata_is_dropped(tmp_path, context, make_registry, caplog):
    manifest = _write(tmp_path / "requirements.txt", "https://example.com/mystery.zip\n")
    registry = make_registry()

    with caplog.at_level(logging.WARNING):
        records = ManifestReader(manifest, registry=registry, context=context).read()

    assert records == []
    assert "does not declare a name" in caplog.text
