from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import structlog
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from semantic_version import Version

from cargo_lens.cache import VersionCache
from cargo_lens.config import AppConfig, Registry
from cargo_lens.index_client import RegistryClient
from cargo_lens.manifest import extract_dependencies, load_manifest
from cargo_lens.models import FetchError, status_for_error
from cargo_lens.report import Report, ReportItem
from cargo_lens.resolver import DependencyLookup, resolve_dependencies
from cargo_lens.versions import classify

log = structlog.get_logger("cargo_lens.app")


def docs_url(registry: Registry | None, name: str, version: Version | None) -> str | None:
    """
    生成某个 crate 版本的文档链接（registry 未配置 docs 时返回 None）。
    """
    if registry is None or not registry.docs or version is None:
        return None
    return f"{registry.docs.rstrip('/')}/{name}/{version}"


def _report_item(lookup: DependencyLookup) -> ReportItem:
    """
    将单个依赖的查询结果分类并转换为报告条目。
    """
    dep = lookup.dependency
    registry_name = lookup.registry.name if lookup.registry else dep.registry
    if isinstance(lookup.versions, FetchError):
        return ReportItem(
            kind=dep.kind,
            alias=dep.alias,
            name=dep.name,
            requirement=dep.requirement,
            line=dep.line,
            resolved=None,
            latest_stable=None,
            latest=None,
            status=status_for_error(lookup.versions),
            recommended=None,
            registry=registry_name,
            docs_url=None,
            error=lookup.versions.message,
        )

    result = classify(dep.version_range, lookup.versions)
    error = None
    if result.resolved is None:
        error = f"no versions of the crate {dep.name} satisfy the given requirement"
    return ReportItem(
        kind=dep.kind,
        alias=dep.alias,
        name=dep.name,
        requirement=dep.requirement,
        line=dep.line,
        resolved=result.resolved,
        latest_stable=result.latest_stable,
        latest=result.latest,
        status=result.status,
        recommended=result.recommended,
        registry=registry_name,
        docs_url=docs_url(lookup.registry, dep.name, result.resolved),
        error=error,
        latest_stable_docs_url=docs_url(lookup.registry, dep.name, result.latest_stable),
        latest_docs_url=docs_url(lookup.registry, dep.name, result.latest),
    )


async def check_manifest(
    manifest_path: Path,
    *,
    config: AppConfig,
    client: RegistryClient | None = None,
    on_fetch_start: Callable[[int], Any] | None = None,
    on_fetch_complete: Callable[[], Any] | None = None,
) -> Report:
    """
    检查 Cargo.toml 中的依赖版本并生成报告。
    """
    tables = load_manifest(manifest_path)
    dependencies = extract_dependencies(tables)
    log.info("manifest.parsed", path=str(manifest_path), dependencies=len(dependencies))

    own_client = client is None
    if client is None:
        client = RegistryClient(config.index, cache=VersionCache(config.cache_ttl_s))

    try:
        if on_fetch_start is not None:
            on_fetch_start(len(dependencies))
        lookups = await resolve_dependencies(
            dependencies,
            registries=config.registries,
            client=client,
            use_cache=config.use_cargo_cache,
            on_fetch_complete=on_fetch_complete,
        )
    finally:
        if own_client:
            await client.aclose()

    return Report(
        manifest_path=str(manifest_path),
        items=[_report_item(lookup) for lookup in lookups],
        cache_hits=client.cache_hits,
        fetched=client.fetched,
    )


def run_check(manifest_path: Path, *, config: AppConfig) -> Report:
    """
    同步入口：运行依赖检查（内部使用 asyncio）。
    """
    console = Console(stderr=True)
    state: dict[str, Any] = {"progress": None, "task_id": None}

    def on_start(total: int) -> None:
        if total > 0:
            progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                "({task.completed}/{task.total})",
                console=console,
                transient=True,
            )
            progress.start()
            task_id = progress.add_task("查询 registry...", total=total)
            state["progress"] = progress
            state["task_id"] = task_id

    def on_complete() -> None:
        progress = state["progress"]
        task_id = state["task_id"]
        if progress and task_id is not None:
            progress.advance(task_id)

    try:
        return asyncio.run(
            check_manifest(
                manifest_path,
                config=config,
                on_fetch_start=on_start,
                on_fetch_complete=on_complete,
            )
        )
    finally:
        if state["progress"]:
            state["progress"].stop()
