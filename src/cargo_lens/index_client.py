from __future__ import annotations

import asyncio
import json
import random
import struct
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx
import structlog
from semantic_version import Version

from cargo_lens import __version__
from cargo_lens.cache import VersionCache, index_scope_key
from cargo_lens.config import IndexSettings, Registry, cargo_home
from cargo_lens.models import ErrorKind, FetchError, RegistrySource

log = structlog.get_logger("cargo_lens.index")

USER_AGENT = f"cargo-lens/{__version__}"

# Cargo 内部的缓存文件格式版本（Cargo 0.69 / Rust 1.68）。
CURRENT_CACHE_VERSION = 3
INDEX_FORMAT_VERSION = 2
_CACHE_HEADER = struct.Struct("<BI")

_NOT_FOUND_STATUSES = {404, 410, 451}


def resolve_index_path(name: str) -> str:
    """
    按 Cargo 索引的分片规则生成 crate 的相对路径。
    """
    lowered = name.lower()
    if len(lowered) == 0:
        return ""
    if len(lowered) == 1:
        return f"1/{lowered}"
    if len(lowered) == 2:
        return f"2/{lowered}"
    if len(lowered) == 3:
        return f"3/{lowered[0]}/{lowered}"
    return f"{lowered[:2]}/{lowered[2:4]}/{lowered}"


def resolve_cache_dir(cache_id: str) -> Path:
    """
    返回 Cargo 本地索引缓存目录：<CARGO_HOME>/registry/index/<cache_id>/.cache。
    """
    return cargo_home() / "registry" / "index" / cache_id / ".cache"


def _build_index_url(index_url: str, name: str) -> str:
    """
    生成 sparse 索引中 crate 文件的请求 URL。
    """
    base = index_url.rstrip("/")
    return f"{base}/{resolve_index_path(name)}"


def _file_url_to_path(index_url: str) -> Path:
    """
    将 file:// 索引地址转换为本地路径。
    """
    return Path(url2pathname(urlparse(index_url).path))


def _build_headers(registry: Registry) -> dict[str, str]:
    """
    构造请求 Header（User-Agent 与可选的 registry token）。
    """
    headers: dict[str, str] = {"User-Agent": USER_AGENT}
    if registry.token:
        headers["Authorization"] = registry.token
    return headers


def parse_release(line: str, name: str) -> Version | str | None:
    """
    解析索引中的一行发布记录。

    返回 Version；记录被拒绝时返回原因字符串；已 yank 的版本返回 None。
    """
    try:
        record = json.loads(line)
    except ValueError as exc:
        return f"invalid JSON: {exc}"
    if not isinstance(record, dict):
        return "invalid JSON: not an object"

    if record.get("name") != name:
        return f"crate name does not match: {record.get('name')}"
    try:
        version = Version(str(record.get("vers")))
    except ValueError:
        return f"invalid semver: {record.get('vers')}"
    if "yanked" not in record:
        return '"yanked" key missing'
    if record["yanked"]:
        return None
    return version


def _split_cache_records(name: str, data: bytes) -> list[str] | FetchError:
    """
    校验 Cargo 缓存文件头，并拆出其中的发布记录（NUL 分隔的键值对中的值）。
    """
    if len(data) < _CACHE_HEADER.size:
        message = "truncated cache file"
        log.warning("index.cache_format", crate=name, reason=message)
        return FetchError(kind=ErrorKind.CACHE_FORMAT, message=message)

    cache_version, index_version = _CACHE_HEADER.unpack_from(data)
    if cache_version != CURRENT_CACHE_VERSION:
        message = f"unknown cache version found in cache: {cache_version}"
        log.warning("index.cache_format", crate=name, reason=message)
        return FetchError(kind=ErrorKind.CACHE_FORMAT, message=message)
    if index_version != INDEX_FORMAT_VERSION:
        message = f"unknown index version found in cache: {index_version}"
        log.warning("index.cache_format", crate=name, reason=message)
        return FetchError(kind=ErrorKind.CACHE_FORMAT, message=message)

    segments = data[_CACHE_HEADER.size:].decode("utf-8", errors="replace").split("\0")
    return [s for i, s in enumerate(segments) if i % 2 == 0 and i != 0]


def parse_index(name: str, data: bytes, source: RegistrySource) -> list[Version] | FetchError:
    """
    解析索引文件内容（Cargo 二进制缓存或逐行 JSON），返回未 yank 的版本列表。
    """
    if source == RegistrySource.CACHE:
        lines = _split_cache_records(name, data)
        if isinstance(lines, FetchError):
            return lines
    else:
        lines = data.decode("utf-8", errors="replace").strip().split("\n")

    versions: list[Version] = []
    for i, line in enumerate(lines):
        parsed = parse_release(line, name)
        if isinstance(parsed, str):
            log.warning("index.record_rejected", crate=name, source=source.value, line=i, reason=parsed)
            continue
        if parsed is not None:
            versions.append(parsed)

    if not versions:
        message = f"no versions found in {source.value}"
        log.warning("index.no_versions", crate=name, source=source.value)
        return FetchError(kind=ErrorKind.NO_VERSIONS, message=message)

    log.info("index.parsed", crate=name, source=source.value, count=len(versions))
    return versions


def read_local_index(name: str, root: Path, source: RegistrySource) -> list[Version] | FetchError:
    """
    从本地目录（Cargo 缓存或本地镜像）读取并解析 crate 的索引文件。
    """
    path = root / resolve_index_path(name)
    log.info("index.fetch", crate=name, source=source.value, path=str(path))
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        message = f"crate {name} not found in {source.value}"
        log.error("index.fetch_failed", crate=name, source=source.value, reason=message)
        return FetchError(kind=ErrorKind.NOT_FOUND, message=message)
    except OSError as exc:
        message = f"{source.value} read error: {exc}"
        log.error("index.fetch_failed", crate=name, source=source.value, reason=message)
        return FetchError(kind=ErrorKind.READ_ERROR, message=message)
    return parse_index(name, data, source)


async def _request_index(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    timeout_s: float,
    retries: int,
) -> httpx.Response | FetchError:
    """
    请求索引文件；超时与网络错误按 retries 退避重试，HTTP 状态码不重试。
    """
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(client.get(url, headers=headers), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error = FetchError(kind=ErrorKind.TIMEOUT, message="connection to registry timeout")
        except httpx.HTTPError as exc:
            error = FetchError(kind=ErrorKind.TRANSPORT, message=f"registry fetch error: {exc}")
        if attempt >= retries:
            return error
        backoff = (2**attempt) * 0.25 + random.random() * 0.25
        attempt += 1
        await asyncio.sleep(backoff)


async def fetch_remote_index(
    name: str,
    registry: Registry,
    *,
    client: httpx.AsyncClient,
    settings: IndexSettings,
) -> list[Version] | FetchError:
    """
    从远程 sparse registry 获取 crate 的版本列表。
    """
    url = _build_index_url(registry.index, name)
    log.info("index.fetch", crate=name, source=RegistrySource.REGISTRY.value, url=url)
    response = await _request_index(
        client,
        url,
        headers=_build_headers(registry),
        timeout_s=settings.timeout_s,
        retries=settings.retries,
    )
    if isinstance(response, FetchError):
        log.error("index.fetch_failed", crate=name, url=url, reason=response.message)
        return response

    if response.is_success:
        return parse_index(name, response.content, RegistrySource.REGISTRY)

    if response.status_code in _NOT_FOUND_STATUSES:
        # https://doc.rust-lang.org/cargo/reference/registry-index.html#nonexistent-crates
        error = FetchError(
            kind=ErrorKind.NOT_FOUND,
            message=f"crate {name} not found in registry: HTTP {response.status_code}",
        )
    else:
        error = FetchError(
            kind=ErrorKind.UNEXPECTED_STATUS,
            message=f"unexpected response code: HTTP {response.status_code}",
        )
    log.error("index.fetch_failed", crate=name, url=url, reason=error.message)
    return error


def create_async_client(settings: IndexSettings) -> httpx.AsyncClient:
    """
    创建用于访问索引的 AsyncClient（限制并发连接数）。
    """
    limits = httpx.Limits(max_connections=settings.max_connections)
    timeout = httpx.Timeout(settings.timeout_s)
    return httpx.AsyncClient(limits=limits, timeout=timeout, follow_redirects=True)


class RegistryClient:
    """
    按 “内存缓存 → Cargo 本地缓存 → registry（远程或本地镜像）” 的顺序获取 crate 版本列表。

    每种 URL scheme 使用独立的 AsyncClient，从而分别限制并发连接数。
    """

    def __init__(
        self,
        settings: IndexSettings | None = None,
        *,
        cache: VersionCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or IndexSettings()
        self._cache = cache if cache is not None else VersionCache()
        self._transport = transport
        self._clients: dict[str, httpx.AsyncClient] = {}
        self.cache_hits = 0
        self.fetched = 0

    @property
    def cache(self) -> VersionCache:
        return self._cache

    def _client_for(self, scheme: str) -> httpx.AsyncClient:
        client = self._clients.get(scheme)
        if client is None:
            if self._transport is not None:
                client = httpx.AsyncClient(transport=self._transport, follow_redirects=True)
            else:
                client = create_async_client(self._settings)
            self._clients[scheme] = client
        return client

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def fetch_versions(self, name: str, registry: Registry, *, use_cache: bool) -> list[Version] | FetchError:
        """
        获取 crate 的未 yank 版本列表；任何来源解析成功后都会写入内存缓存。
        """
        scope = index_scope_key(registry.index)
        cached = self._cache.get(name, scope=scope)
        if cached is not None:
            self.cache_hits += 1
            return cached

        self.fetched += 1
        if use_cache and registry.cache is not None:
            versions = read_local_index(name, resolve_cache_dir(registry.cache), RegistrySource.CACHE)
            if not isinstance(versions, FetchError):
                self._cache.set(name, versions, scope=scope)
                return versions

        scheme = urlparse(registry.index).scheme.lower()
        if scheme == "file":
            result = read_local_index(name, _file_url_to_path(registry.index), RegistrySource.LOCAL_REGISTRY)
        else:
            result = await fetch_remote_index(
                name,
                registry,
                client=self._client_for(scheme),
                settings=self._settings,
            )
        if not isinstance(result, FetchError):
            self._cache.set(name, result, scope=scope)
        return result
