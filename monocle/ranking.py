"""Ranking and source classification for workspace symbol search results."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .models import (
    RankedSymbolSearchResult,
    SymbolSearchResult,
    SymbolSearchScope,
    SymbolSearchSource,
    SymbolSearchSourceKind,
    SymbolSearchSourcePreference,
)

EXACT_NAME_SCORE = 1000
EXACT_LAST_COMPONENT_SCORE = 950
PREFIX_SCORE = 800
LAST_COMPONENT_PREFIX_SCORE = 750
SUBSTRING_SCORE = 600
MANGLED_PENALTY = 400
TEST_PATH_PENALTY = 100
PREFERENCE_BONUS = 50

CHECKOUT_MARKERS = ("/SourcePackages/checkouts/", "/.build/checkouts/")
BUILD_ARTIFACT_MARKERS = ("/SourcePackages/", "/.build/", "/DerivedData/")
DERIVED_DATA_MARKER = "/DerivedData/"
MANGLED_PREFIXES = ("$s", "$S")
TEST_PATH_MARKERS = ("/Tests/", ".xctest/")


def last_component(name: str) -> str:
    return name.split(".")[-1]


def is_mangled(name: str) -> bool:
    return name.startswith(MANGLED_PREFIXES)


def is_test_path(path: Optional[str]) -> bool:
    if path is None:
        return False
    return any(marker in path for marker in TEST_PATH_MARKERS)


def package_name_from_path(path: str) -> Optional[str]:
    """Return the path segment right after a checkout marker."""
    for marker in CHECKOUT_MARKERS:
        index = path.find(marker)
        if index < 0:
            continue
        remainder = path[index + len(marker):]
        name = remainder.split("/", 1)[0]
        return name or None
    return None


def classify_source(path: Optional[str], workspace_root_path: str) -> SymbolSearchSource:
    """Classify a result path as project, package (dependency), or other.

    ``workspace_root_path`` is expected to be standardized already, see
    :func:`standardize_root`.
    """
    if path is None:
        return SymbolSearchSource(kind=SymbolSearchSourceKind.OTHER)

    standardized = os.path.normpath(path) if path.startswith("/") else path
    is_derived_data = DERIVED_DATA_MARKER in standardized

    if standardized == workspace_root_path or standardized.startswith(workspace_root_path.rstrip("/") + "/"):
        return SymbolSearchSource(kind=SymbolSearchSourceKind.PROJECT, is_derived_data=is_derived_data)

    package_name = package_name_from_path(standardized)
    if package_name is not None:
        return SymbolSearchSource(
            kind=SymbolSearchSourceKind.PACKAGE,
            package_name=package_name,
            is_derived_data=is_derived_data,
        )

    if any(marker in standardized for marker in BUILD_ARTIFACT_MARKERS):
        return SymbolSearchSource(kind=SymbolSearchSourceKind.PACKAGE, is_derived_data=is_derived_data)

    return SymbolSearchSource(kind=SymbolSearchSourceKind.OTHER, is_derived_data=is_derived_data)


def standardize_root(workspace_root_path: str) -> str:
    return os.path.normpath(os.path.realpath(workspace_root_path))


@dataclass(frozen=True)
class SymbolSearchRanker:
    """Scores, filters, and orders raw search results for one query.

    Ranking is pure: the same input always produces the same order, and
    results with equal score and exactness keep their original order.
    """

    query: str
    scope: SymbolSearchScope = SymbolSearchScope.ALL
    preference: SymbolSearchSourcePreference = SymbolSearchSourcePreference.PROJECT
    require_exact_match: bool = False

    @property
    def normalized_query(self) -> str:
        return self.query.strip().lower()

    def rank(self, results: Sequence[SymbolSearchResult], workspace_root_path: str) -> List[RankedSymbolSearchResult]:
        if not results:
            return []

        root = standardize_root(workspace_root_path)
        ranked: List[Tuple[int, RankedSymbolSearchResult]] = []
        for index, result in enumerate(results):
            path = result.path
            source = classify_source(path, root)
            if not self.matches_scope(source):
                continue

            exact = self.is_exact_match(result.name)
            if self.require_exact_match and not exact:
                continue

            ranked.append((index, RankedSymbolSearchResult(
                result=result,
                source=source,
                score=self.score(result.name, source, path),
                is_exact_match=exact,
            )))

        ranked.sort(key=lambda item: (-item[1].score, not item[1].is_exact_match, item[0]))
        return [entry for _, entry in ranked]

    def matches_scope(self, source: SymbolSearchSource) -> bool:
        if self.scope is SymbolSearchScope.PROJECT:
            return source.kind is SymbolSearchSourceKind.PROJECT
        if self.scope is SymbolSearchScope.PACKAGE:
            return source.kind is SymbolSearchSourceKind.PACKAGE
        return True

    def is_exact_match(self, name: str) -> bool:
        query = self.normalized_query
        if not query:
            return False
        normalized = name.lower()
        return normalized == query or last_component(normalized) == query

    def match_quality(self, name: str) -> int:
        query = self.normalized_query
        if not query:
            return 0
        normalized = name.lower()
        component = last_component(normalized)
        if normalized == query:
            return EXACT_NAME_SCORE
        if component == query:
            return EXACT_LAST_COMPONENT_SCORE
        if normalized.startswith(query):
            return PREFIX_SCORE
        if component.startswith(query):
            return LAST_COMPONENT_PREFIX_SCORE
        if query in normalized:
            return SUBSTRING_SCORE
        return 0

    def score(self, name: str, source: SymbolSearchSource, path: Optional[str]) -> int:
        score = self.match_quality(name)
        if is_mangled(name):
            score -= MANGLED_PENALTY
        if is_test_path(path):
            score -= TEST_PATH_PENALTY
        if self.preference is SymbolSearchSourcePreference.PROJECT and source.kind is SymbolSearchSourceKind.PROJECT:
            score += PREFERENCE_BONUS
        elif self.preference is SymbolSearchSourcePreference.PACKAGE and source.kind is SymbolSearchSourceKind.PACKAGE:
            score += PREFERENCE_BONUS
        return score
