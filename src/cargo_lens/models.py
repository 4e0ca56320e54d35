from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cargo_lens.ranges import VersionRange


class DependencyKind(str, Enum):
    """
    依赖所在的表类别。
    """

    NORMAL = "dependencies"
    DEV = "dev-dependencies"
    BUILD = "build-dependencies"


@dataclass(frozen=True, slots=True)
class Dependency:
    """
    从 Cargo.toml 中抽取出来的一条 registry 依赖（只收录版本要求合法的声明）。
    """

    kind: DependencyKind
    alias: str
    name: str
    requirement: str
    version_range: VersionRange
    registry: str | None
    line: int


class RegistrySource(str, Enum):
    """
    版本列表的来源，仅用于日志。
    """

    REGISTRY = "registry"
    LOCAL_REGISTRY = "local registry"
    CACHE = "cache"


class ErrorKind(str, Enum):
    """
    查询版本列表时可能出现的错误类别。
    """

    NOT_FOUND = "not_found"
    UNEXPECTED_STATUS = "unexpected_status"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    READ_ERROR = "read_error"
    CACHE_FORMAT = "cache_format"
    NO_VERSIONS = "no_versions"
    UNKNOWN_REGISTRY = "unknown_registry"


@dataclass(frozen=True, slots=True)
class FetchError:
    """
    单个 crate 查询失败的结果值（不会以异常形式跨模块传播）。
    """

    kind: ErrorKind
    message: str


class CheckStatus(str, Enum):
    """
    单个依赖项的检查状态。
    """

    UP_TO_DATE = "up_to_date"
    UPGRADABLE = "upgradable"
    UNSATISFIABLE = "unsatisfiable"
    NOT_FOUND = "not_found"
    NETWORK_ERROR = "network_error"
    REGISTRY_ERROR = "registry_error"


def status_for_error(error: FetchError) -> CheckStatus:
    """
    将查询错误归类为检查状态。
    """
    if error.kind == ErrorKind.NOT_FOUND:
        return CheckStatus.NOT_FOUND
    if error.kind in {ErrorKind.TIMEOUT, ErrorKind.TRANSPORT}:
        return CheckStatus.NETWORK_ERROR
    return CheckStatus.REGISTRY_ERROR
