from __future__ import annotations

from dataclasses import dataclass

from semantic_version import Version

from cargo_lens.models import CheckStatus, DependencyKind


@dataclass(frozen=True, slots=True)
class ReportItem:
    """
    单条依赖检查结果。
    """

    kind: DependencyKind
    alias: str
    name: str
    requirement: str
    line: int
    resolved: Version | None
    latest_stable: Version | None
    latest: Version | None
    status: CheckStatus
    recommended: Version | None
    registry: str | None
    docs_url: str | None
    error: str | None
    latest_stable_docs_url: str | None = None
    latest_docs_url: str | None = None


@dataclass(frozen=True, slots=True)
class Report:
    """
    一次检查的完整报告。
    """

    manifest_path: str
    items: list[ReportItem]
    cache_hits: int
    fetched: int
