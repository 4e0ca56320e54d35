from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from semantic_version import Version

from cargo_lens.config import Registries, Registry
from cargo_lens.index_client import RegistryClient
from cargo_lens.models import Dependency, FetchError


@dataclass(frozen=True, slots=True)
class DependencyLookup:
    """
    单个依赖的查询结果：所用 registry 与版本列表（或错误）。
    """

    dependency: Dependency
    registry: Registry | None
    versions: list[Version] | FetchError


async def resolve_dependencies(
    dependencies: list[Dependency],
    *,
    registries: Registries,
    client: RegistryClient,
    use_cache: bool,
    on_fetch_complete: Callable[[], Any] | None = None,
) -> list[DependencyLookup]:
    """
    并发查询一个 manifest 中所有依赖的版本列表，按输入顺序返回结果。

    每个依赖的失败都以 FetchError 值返回，不影响其它依赖。
    """

    async def worker(dep: Dependency) -> DependencyLookup:
        registry = registries.get(dep.registry)
        if isinstance(registry, FetchError):
            lookup = DependencyLookup(dependency=dep, registry=None, versions=registry)
        else:
            versions = await client.fetch_versions(dep.name, registry, use_cache=use_cache)
            lookup = DependencyLookup(dependency=dep, registry=registry, versions=versions)
        if on_fetch_complete is not None:
            on_fetch_complete()
        return lookup

    return list(await asyncio.gather(*(worker(d) for d in dependencies)))
