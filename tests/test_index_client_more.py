from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest
from semantic_version import Version

from cargo_lens.cache import VersionCache
from cargo_lens.config import IndexSettings, Registry
from cargo_lens.index_client import USER_AGENT, RegistryClient
from cargo_lens.models import ErrorKind, FetchError


def _body(name: str, *versions: str) -> str:
    return "\n".join(json.dumps({"name": name, "vers": v, "yanked": False}) for v in versions) + "\n"


def _write_cache_file(cargo_home: Path, cache_id: str, shard: str, data: bytes) -> None:
    path = cargo_home / "registry" / "index" / cache_id / ".cache" / shard
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _cache_bytes(header: bytes, name: str, *versions: str) -> bytes:
    body = "etag\0" + "".join(f"{v}\0{json.dumps({'name': name, 'vers': v, 'yanked': False})}\0" for v in versions)
    return header + body.encode("utf-8")


REGISTRY = Registry(index="https://index.test/", cache="index.test-cache")


@pytest.mark.asyncio
async def test_fetch_remote_parses_and_populates_cache(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """
    远程获取成功后应写入内存缓存，第二次查询不再发起请求。
    """
    monkeypatch.setenv("CARGO_HOME", str(tmp_path))
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=_body("serde", "1.0.0", "1.0.1"))

    async with RegistryClient(transport=httpx.MockTransport(handler)) as client:
        first = await client.fetch_versions("serde", REGISTRY, use_cache=True)
        second = await client.fetch_versions("serde", REGISTRY, use_cache=True)

    assert first == [Version("1.0.0"), Version("1.0.1")]
    assert second == first
    assert len(seen) == 1
    assert str(seen[0].url) == "https://index.test/se/rd/serde"
    assert seen[0].headers["User-Agent"] == USER_AGENT
    assert client.cache_hits == 1
    assert client.fetched == 1


@pytest.mark.asyncio
async def test_fetch_prefers_cargo_cache_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """
    useCache 开启且 Cargo 缓存文件有效时，不应访问远程 registry。
    """
    monkeypatch.setenv("CARGO_HOME", str(tmp_path))
    _write_cache_file(tmp_path, "index.test-cache", "se/rd/serde", _cache_bytes(b"\x03\x02\x00\x00\x00", "serde", "1.0.5"))

    def handler(_request: httpx.Request) -> httpx.Response:
        raise AssertionError("registry should not be queried")

    async with RegistryClient(transport=httpx.MockTransport(handler)) as client:
        versions = await client.fetch_versions("serde", REGISTRY, use_cache=True)
    assert versions == [Version("1.0.5")]
    assert client.cache.get("serde", scope="https://index.test") == [Version("1.0.5")]


@pytest.mark.asyncio
async def test_cache_format_mismatch_falls_through_to_registry(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """
    缓存文件版本为 4 时应放弃缓存，改从 registry 获取。
    """
    monkeypatch.setenv("CARGO_HOME", str(tmp_path))
    _write_cache_file(tmp_path, "index.test-cache", "se/rd/serde", _cache_bytes(b"\x04\x02\x00\x00\x00", "serde", "0.1.0"))
    calls = {"n": 0}

    def handler(_request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, text=_body("serde", "1.0.0"))

    async with RegistryClient(transport=httpx.MockTransport(handler)) as client:
        versions = await client.fetch_versions("serde", REGISTRY, use_cache=True)
    assert versions == [Version("1.0.0")]
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_use_cache_false_skips_cargo_cache(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """
    useCache 关闭时即使存在缓存文件也应直接访问 registry。
    """
    monkeypatch.setenv("CARGO_HOME", str(tmp_path))
    _write_cache_file(tmp_path, "index.test-cache", "se/rd/serde", _cache_bytes(b"\x03\x02\x00\x00\x00", "serde", "0.1.0"))

    transport = httpx.MockTransport(lambda _req: httpx.Response(200, text=_body("serde", "1.0.0")))
    async with RegistryClient(transport=transport) as client:
        versions = await client.fetch_versions("serde", REGISTRY, use_cache=False)
    assert versions == [Version("1.0.0")]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 410, 451])
async def test_not_found_statuses_are_not_retried(status: int, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """
    404/410/451 应返回 NOT_FOUND（消息包含 crate 名），且不重试。
    """
    monkeypatch.setenv("CARGO_HOME", str(tmp_path))
    calls = {"n": 0}

    def handler(_request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(status, text="not found")

    client = RegistryClient(IndexSettings(retries=2), transport=httpx.MockTransport(handler))
    async with client:
        res = await client.fetch_versions("nope-crate", REGISTRY, use_cache=True)
    assert isinstance(res, FetchError)
    assert res.kind == ErrorKind.NOT_FOUND
    assert "nope-crate" in res.message
    assert f"HTTP {status}" in res.message
    assert calls["n"] == 1
    assert client.cache.get("nope-crate", scope="https://index.test") is None


@pytest.mark.asyncio
async def test_unexpected_status(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """
    其它非 2xx 状态码应返回 UNEXPECTED_STATUS。
    """
    monkeypatch.setenv("CARGO_HOME", str(tmp_path))
    transport = httpx.MockTransport(lambda _req: httpx.Response(500, text="boom"))
    async with RegistryClient(transport=transport) as client:
        res = await client.fetch_versions("serde", REGISTRY, use_cache=False)
    assert isinstance(res, FetchError)
    assert res.kind == ErrorKind.UNEXPECTED_STATUS
    assert res.message == "unexpected response code: HTTP 500"


@pytest.mark.asyncio
async def test_deadline_reports_timeout() -> None:
    """
    超过固定超时时间的请求应被中止并报告为 TIMEOUT。
    """

    async def handler(_request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, text=_body("serde", "1.0.0"))

    client = RegistryClient(IndexSettings(timeout_s=0.05), transport=httpx.MockTransport(handler))
    async with client:
        res = await client.fetch_versions("serde", REGISTRY, use_cache=False)
    assert isinstance(res, FetchError)
    assert res.kind == ErrorKind.TIMEOUT
    assert res.message == "connection to registry timeout"


@pytest.mark.asyncio
async def test_transport_timeout_and_error_are_distinguished() -> None:
    """
    httpx 的超时异常归为 TIMEOUT，其它传输错误归为 TRANSPORT。
    """

    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timeout", request=request)

    def error_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with RegistryClient(transport=httpx.MockTransport(timeout_handler)) as client:
        timeout = await client.fetch_versions("serde", REGISTRY, use_cache=False)
    async with RegistryClient(transport=httpx.MockTransport(error_handler)) as client:
        error = await client.fetch_versions("serde", REGISTRY, use_cache=False)

    assert isinstance(timeout, FetchError)
    assert timeout.kind == ErrorKind.TIMEOUT
    assert isinstance(error, FetchError)
    assert error.kind == ErrorKind.TRANSPORT
    assert error.message == "registry fetch error: connection refused"


@pytest.mark.asyncio
async def test_transport_errors_are_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    配置了 retries 时，网络错误应退避重试并在成功后返回版本列表。
    """

    async def fake_sleep(_s: float) -> None:
        """
        避免真实 sleep，让重试测试更快更稳定。
        """
        return None

    monkeypatch.setattr("cargo_lens.index_client.asyncio.sleep", fake_sleep)
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("flaky", request=request)
        return httpx.Response(200, text=_body("serde", "1.0.0"))

    client = RegistryClient(IndexSettings(retries=1), transport=httpx.MockTransport(handler))
    async with client:
        res = await client.fetch_versions("serde", REGISTRY, use_cache=False)
    assert res == [Version("1.0.0")]
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_token_is_sent_as_authorization_header() -> None:
    """
    registry 配置了 token 时应通过 Authorization 头发送。
    """
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=_body("private", "0.1.0"))

    registry = Registry(index="https://private.test/index/", name="private", token="secret-token")
    async with RegistryClient(transport=httpx.MockTransport(handler)) as client:
        await client.fetch_versions("private", registry, use_cache=False)
    assert seen[0].headers["Authorization"] == "secret-token"
    assert str(seen[0].url) == "https://private.test/index/pr/iv/private"


@pytest.mark.asyncio
async def test_file_index_reads_local_mirror(tmp_path: Path) -> None:
    """
    file:// 索引应直接从本地镜像目录读取。
    """
    path = tmp_path / "3" / "f" / "foo"
    path.parent.mkdir(parents=True)
    path.write_text(_body("foo", "0.1.0", "0.2.0"), encoding="utf-8")

    registry = Registry(index=tmp_path.as_uri())

    def handler(_request: httpx.Request) -> httpx.Response:
        raise AssertionError("network should not be used for file registries")

    async with RegistryClient(transport=httpx.MockTransport(handler)) as client:
        versions = await client.fetch_versions("foo", registry, use_cache=True)
        missing = await client.fetch_versions("bar", registry, use_cache=True)
    assert versions == [Version("0.1.0"), Version("0.2.0")]
    assert isinstance(missing, FetchError)
    assert missing.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_expired_cache_entry_triggers_refetch(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """
    内存缓存过期后应重新访问 registry。
    """
    monkeypatch.setenv("CARGO_HOME", str(tmp_path))
    now = {"t": 0.0}
    cache = VersionCache(10, clock=lambda: now["t"])
    calls = {"n": 0}

    def handler(_request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, text=_body("serde", "1.0.0"))

    async with RegistryClient(cache=cache, transport=httpx.MockTransport(handler)) as client:
        await client.fetch_versions("serde", REGISTRY, use_cache=True)
        now["t"] = 11.0
        await client.fetch_versions("serde", REGISTRY, use_cache=True)
    assert calls["n"] == 2
