# paths.py
"""
Path classification: decide, per category, whether a change set touches it.

Glob rules (forward-slash paths, case-sensitive):
  - `*` and `?` match within a single path segment
  - `**` matches across segments; `dir/**` matches everything under `dir/`
  - a leading `**/` matches at any depth, including the root
  - `[abc]` / `[!abc]` character classes, which never match `/`
  - a pattern without `/` only matches a root-level path (`Cargo.lock`)
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Dict, Iterable, Sequence

from .model import Category


@lru_cache(maxsize=1024)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a glob into an anchored regular expression."""
    i, n = 0, len(pattern)
    out: list[str] = []

    while i < n:
        c = pattern[i]

        if c == "*":
            if pattern.startswith("**", i):
                at_start = i == 0 or pattern[i - 1] == "/"
                j = i + 2
                if at_start and j < n and pattern[j] == "/":
                    # `**/` -> zero or more whole directories
                    out.append("(?:.*/)?")
                    i = j + 1
                    continue
                if at_start and j == n and i > 0:
                    # trailing `/**` -> the directory itself or anything below it
                    out.pop()  # drop the escaped "/" we just emitted
                    out.append("(?:/.*)?")
                    i = j
                    continue
                out.append(".*")
                i = j
                continue
            out.append("[^/]*")
            i += 1
            continue

        if c == "?":
            out.append("[^/]")
            i += 1
            continue

        if c == "[":
            j = pattern.find("]", i + 2 if pattern.startswith("[!", i) else i + 1)
            if j == -1:
                out.append(re.escape(c))
                i += 1
                continue
            body = pattern[i + 1 : j].replace("\\", "\\\\")
            # a class never matches the segment separator
            if body.startswith("!"):
                out.append("[^/" + body[1:] + "]")
            else:
                out.append("(?!/)[" + body + "]")
            i = j + 1
            continue

        out.append(re.escape(c))
        i += 1

    return re.compile("".join(out) + r"\Z")


def normalize_path(path: str) -> str:
    p = path.replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def matches(path: str, pattern: str) -> bool:
    return compile_glob(pattern).match(normalize_path(path)) is not None


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(matches(path, p) for p in patterns)


def is_relevant(path: str, category: Category) -> bool:
    """A path is relevant to a category if it is included and not ignored."""
    if not normalize_path(path):
        return False
    if category.files and not matches_any(path, category.files):
        return False
    return not matches_any(path, category.ignore)


def classify(change_set: Sequence[str], categories: Iterable[Category]) -> Dict[str, bool]:
    """
    Return {category name: relevant change present}.

    Pure function of its inputs. An empty change set yields False everywhere.
    """
    return {
        cat.name: any(is_relevant(path, cat) for path in change_set)
        for cat in categories
    }


def relevant_paths(change_set: Sequence[str], category: Category) -> list[str]:
    """The paths that made `category` true (for plan / debug output)."""
    return [p for p in change_set if is_relevant(p, category)]
