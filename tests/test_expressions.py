from __future__ import annotations

import hashlib

import pytest

from relayci.errors import InvalidSpec
from relayci.expressions import check, evaluate, has_expressions, hash_files, render

CTX = {
    "matrix": {"os": "ubuntu-latest", "debug": True},
    "runner": {"os": "Linux"},
    "github": {"ref": "refs/pull/5/merge"},
}


def test_render_lookups():
    assert render("${{ runner.os }}-cargo-", CTX) == "Linux-cargo-"
    assert render("${{matrix.os}}", CTX) == "ubuntu-latest"
    assert render("group-${{ github.ref }}", CTX) == "group-refs/pull/5/merge"


def test_missing_names_render_empty():
    assert render("${{ matrix.rust }}x", CTX) == "x"
    assert render("${{ nothing.here.at.all }}", CTX) == ""


def test_booleans_render_lowercase():
    assert evaluate("matrix.debug", CTX) == "true"


def test_literals():
    assert evaluate("'it''s'", CTX) == "it's"
    assert evaluate('"plain"', CTX) == "plain"


def test_text_without_expressions_is_untouched():
    assert render("cargo test --locked", CTX) == "cargo test --locked"
    assert not has_expressions("cargo test")
    assert has_expressions("${{ matrix.os }}")


def test_hash_files_matches_content(tmp_path):
    (tmp_path / "Cargo.lock").write_text("v1")
    first = render("${{ hashFiles('Cargo.lock') }}", CTX, root=tmp_path)
    expected = hashlib.sha256(hashlib.sha256(b"v1").digest()).hexdigest()
    assert first == expected

    (tmp_path / "Cargo.lock").write_text("v2")
    assert render("${{ hashFiles('Cargo.lock') }}", CTX, root=tmp_path) != first


def test_hash_files_globs_and_multiple_patterns(tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "one.lock").write_text("1")
    (tmp_path / "b.lock").write_text("2")
    both = hash_files(tmp_path, "**/*.lock")
    assert both == hash_files(tmp_path, "a/one.lock", "b.lock")
    assert both != hash_files(tmp_path, "b.lock")


def test_hash_files_without_matches_is_empty(tmp_path):
    assert render("k-${{ hashFiles('missing.lock') }}", CTX, root=tmp_path) == "k-"


@pytest.mark.parametrize("expr", ["toJSON(matrix)", "hashFiles()", "matrix.os || 'x'", "1 + 2"])
def test_unsupported_expressions_are_invalid(expr):
    with pytest.raises(InvalidSpec):
        evaluate(expr, CTX)


def test_check_accepts_well_formed_templates_without_evaluating(tmp_path):
    # nothing is hashed or looked up, so missing files and names are fine
    check("${{ runner.os }}-cargo-${{ hashFiles('missing.lock', '**/*.toml') }}")
    check("echo ${{ 'literal' }} ${{ matrix.unknown }}")
    check("plain command with ${SHELL_VAR}")


@pytest.mark.parametrize(
    "template, message",
    [
        ("k-${{ 1 + 2 }}", "unsupported expression"),
        ("${{ format('{0}', matrix.os) }}", "unknown function"),
        ("${{ }}", "empty expression"),
        ("${{ hashFiles(Cargo.lock) }}", "cannot parse arguments"),
        ("echo ${{ matrix.os", "unterminated"),
    ],
)
def test_check_rejects_malformed_templates(template, message):
    with pytest.raises(InvalidSpec, match=message):
        check(template)
