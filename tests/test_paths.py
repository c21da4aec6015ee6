from __future__ import annotations

import pytest

from changegate.dsl import category
from changegate.paths import classify, compile_glob, matches, relevant_paths


CATEGORIES = [
    category("non-js", ignore=["app/**"]),
    category("non-rust", ignore=["src/**"]),
]


def test_rust_change_marks_backend_relevant():
    assert classify(["src/lib.rs"], CATEGORIES) == {"non-js": True, "non-rust": False}


def test_template_change_marks_frontend_relevant():
    assert classify(["app/templates/foo.hbs"], CATEGORIES) == {"non-js": False, "non-rust": True}


def test_mixed_change_marks_both():
    assert classify(["app/app.js", "src/main.rs"], CATEGORIES) == {"non-js": True, "non-rust": True}


def test_empty_change_set_is_false_everywhere():
    cats = CATEGORIES + [category("lockfile", files=["Cargo.lock"]), category("anything")]
    assert classify([], cats) == {"non-js": False, "non-rust": False, "lockfile": False, "anything": False}


def test_classify_is_idempotent():
    change_set = ["src/lib.rs", "app/router.js", "README.md"]
    first = classify(change_set, CATEGORIES)
    second = classify(change_set, CATEGORIES)
    assert first == second
    assert classify(list(change_set), CATEGORIES) == first


def test_category_without_globs_counts_every_path():
    assert classify(["anything.txt"], [category("all")]) == {"all": True}


def test_include_list_only_counts_matching_paths():
    lockfile = category("rust-lockfile", files=["Cargo.lock"])
    assert classify(["Cargo.lock"], [lockfile]) == {"rust-lockfile": True}
    assert classify(["Cargo.toml", "src/lib.rs"], [lockfile]) == {"rust-lockfile": False}


def test_include_and_ignore_combine():
    cat = category("docs", files=["docs/**"], ignore=["docs/generated/**"])
    assert classify(["docs/generated/api.md"], [cat]) == {"docs": False}
    assert classify(["docs/guide.md"], [cat]) == {"docs": True}


@pytest.mark.parametrize(
    "path, pattern, expected",
    [
        ("app/templates/foo.hbs", "app/**", True),
        ("app", "app/**", True),
        ("application/x.js", "app/**", False),
        ("src/lib.rs", "src/*", True),
        ("src/a/lib.rs", "src/*", False),
        ("Cargo.lock", "Cargo.lock", True),
        ("crates/foo/Cargo.lock", "Cargo.lock", False),
        ("crates/foo/Cargo.lock", "**/Cargo.lock", True),
        ("Cargo.lock", "**/Cargo.lock", True),
        ("crates_io_worker/src/lib.rs", "crates_io_*/**", True),
        ("crates/io/lib.rs", "crates_io_*/**", False),
        ("a/x/y/b.txt", "a/**/b.txt", True),
        ("a/b.txt", "a/**/b.txt", True),
        ("SRC/lib.rs", "src/**", False),
        ("file1.txt", "file?.txt", True),
        ("file12.txt", "file?.txt", False),
        ("v1.rs", "v[0-9].rs", True),
        ("va.rs", "v[!0-9].rs", True),
        ("v1.rs", "v[!0-9].rs", False),
        (".eslintrc", ".eslintrc", True),
        ("x.eslintrc", ".eslintrc", False),
    ],
)
def test_glob_semantics(path, pattern, expected):
    assert matches(path, pattern) is expected


def test_paths_are_normalized():
    assert matches("./src/lib.rs", "src/**")
    assert matches("/src/lib.rs", "src/**")


def test_compiled_globs_are_memoized():
    assert compile_glob("app/**") is compile_glob("app/**")


def test_relevant_paths_lists_the_paths_that_count():
    cat = category("non-js", ignore=["app/**"])
    assert relevant_paths(["app/a.js", "src/lib.rs", "README.md"], cat) == ["src/lib.rs", "README.md"]


@pytest.mark.parametrize(
    "path, pattern",
    [
        ("v/.rs", "v[!0-9].rs"),
        ("v/.rs", "v[/a].rs"),
        ("a/b", "a[!x]b"),
    ],
)
def test_character_classes_never_match_a_separator(path, pattern):
    assert not matches(path, pattern)


def test_empty_paths_are_not_relevant():
    cats = [category("all"), category("non-js", ignore=["app/**"])]
    assert classify(["", "./", "/"], cats) == {"all": False, "non-js": False}
    assert relevant_paths(["", "src/lib.rs"], cats[0]) == ["src/lib.rs"]
