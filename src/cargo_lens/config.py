from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib

from cargo_lens.cache import DEFAULT_TTL_S
from cargo_lens.models import ErrorKind, FetchError

CRATES_IO_INDEX = "https://index.crates.io/"
CRATES_IO_CACHE = "index.crates.io-6f17d22bba15001f"
DOCS_RS = "https://docs.rs/"
# Cargo 配置中默认 registry 的缓存目录名（与 crates.io 的目录区分开）
CARGO_DEFAULT_REGISTRY_CACHE = "default-registry-cache-8675309"


@dataclass(frozen=True, slots=True)
class Registry:
    """
    一个 crate registry 的描述（引擎只读不写）。
    """

    index: str
    cache: str | None = None
    docs: str | None = None
    name: str | None = None
    token: str | None = None


@dataclass(frozen=True, slots=True)
class Registries:
    """
    默认 registry 与按名称引用的其它 registry。
    """

    default: Registry
    secondary: tuple[Registry, ...] = ()

    def get(self, name: str | None) -> Registry | FetchError:
        """
        按依赖声明中的 registry 名称选择 registry；未声明时使用默认 registry。
        """
        if name is None:
            return self.default
        if self.default.name == name:
            return self.default
        for reg in self.secondary:
            if reg.name == name:
                return reg
        return FetchError(kind=ErrorKind.UNKNOWN_REGISTRY, message=f"unknown registry: {name}")


@dataclass(frozen=True, slots=True)
class IndexSettings:
    """
    访问 registry 索引的网络配置。
    """

    timeout_s: float = 30.0
    retries: int = 0
    max_connections: int = 6


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    cargo-lens 的运行配置（可来自配置文件、环境变量与 CLI 参数合并）。
    """

    registries: Registries = field(
        default_factory=lambda: Registries(default=Registry(index=CRATES_IO_INDEX, cache=CRATES_IO_CACHE, docs=DOCS_RS))
    )
    index: IndexSettings = field(default_factory=IndexSettings)
    use_cargo_cache: bool = True
    cache_ttl_s: int = DEFAULT_TTL_S
    log_level: str | None = None
    log_format: str | None = None


def strip_sparse_prefix(index: str) -> str:
    """
    去掉 Cargo 配置中的 ``sparse+`` 协议前缀。
    """
    return index[len("sparse+"):] if index.startswith("sparse+") else index


def cargo_home() -> Path:
    """
    返回 CARGO_HOME（默认 ~/.cargo）。
    """
    value = os.environ.get("CARGO_HOME")
    if value:
        return Path(value)
    return Path.home() / ".cargo"


def _find_default_config_file(cwd: Path) -> Path | None:
    """
    在当前目录查找默认配置文件路径。
    """
    candidates = [
        ".cargo-lens.toml",
        ".cargo-lens.yaml",
        ".cargo-lens.yml",
        "cargo-lens.toml",
        "cargo-lens.yaml",
        "cargo-lens.yml",
    ]
    for name in candidates:
        p = cwd / name
        if p.exists() and p.is_file():
            return p
    return None


def _load_yaml(path: Path) -> dict[str, Any]:
    """
    读取 YAML 配置文件（需要 PyYAML）。
    """
    import yaml

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def _load_config_file(path: Path) -> dict[str, Any]:
    """
    读取 .toml 或 .yaml 配置文件，返回配置字典。
    """
    suffix = path.suffix.lower()
    if suffix == ".toml":
        data = tomllib.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}
    if suffix in {".yaml", ".yml"}:
        return _load_yaml(path)
    return {}


def _env_bool(key: str) -> bool | None:
    """
    从环境变量读取布尔值（1/true/yes/on 为真）。
    """
    value = os.environ.get(key)
    if value is None or not value.strip():
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _read_toml_file(path: Path) -> dict[str, Any]:
    """
    读取 TOML 文件；文件不存在时返回空字典。
    """
    if not path.is_file():
        return {}
    return tomllib.loads(path.read_text(encoding="utf-8"))


def load_cargo_registries(home: Path, *, docs: str | None = DOCS_RS) -> tuple[Registry | None, list[Registry]]:
    """
    从 Cargo 的 config.toml 与 credentials.toml 读取 registry 列表。

    返回 (默认 registry 或 None, 其它 registry 列表)；``[registry] default``
    指定的 registry 会作为默认 registry 返回。默认 registry 使用
    ``CARGO_DEFAULT_REGISTRY_CACHE`` 作为本地缓存目录名。
    """
    cargo_config = _read_toml_file(home / "config.toml")
    credentials = _read_toml_file(home / "credentials.toml")

    tokens: dict[str, str] = {}
    cred_registries = credentials.get("registries") or {}
    if isinstance(cred_registries, dict):
        for name, entry in cred_registries.items():
            if isinstance(entry, dict) and isinstance(entry.get("token"), str):
                tokens[str(name)] = entry["token"]

    default_name = (cargo_config.get("registry") or {}).get("default")
    default: Registry | None = None
    secondary: list[Registry] = []
    registries_table = cargo_config.get("registries") or {}
    if not isinstance(registries_table, dict):
        return None, []

    for name, entry in registries_table.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("index"), str):
            continue
        reg = Registry(
            index=strip_sparse_prefix(entry["index"]),
            docs=docs,
            name=str(name),
            token=tokens.get(str(name)),
        )
        if default_name is not None and name == default_name:
            default = replace(reg, cache=CARGO_DEFAULT_REGISTRY_CACHE)
        else:
            secondary.append(reg)
    return default, secondary


def _registry_from_dict(data: dict[str, Any], *, docs: str) -> Registry | None:
    """
    将配置文件中的单个 registry 条目转换为 Registry。
    """
    index = data.get("index")
    if not isinstance(index, str) or not index:
        return None
    return Registry(
        index=strip_sparse_prefix(index),
        cache=data.get("cache") or None,
        docs=data.get("docs") or docs,
        name=data.get("name") or None,
        token=data.get("token") or None,
    )


def load_config(config_path: str | None, *, use_cargo_config: bool | None = None) -> AppConfig:
    """
    从配置文件、环境变量（以及可选的 Cargo 配置）加载 AppConfig。

    use_cargo_config 不为 None 时覆盖配置文件与环境变量中的同名开关。
    """
    config_data: dict[str, Any] = {}
    if config_path:
        config_data = _load_config_file(Path(config_path))
    else:
        default = _find_default_config_file(Path.cwd())
        if default:
            config_data = _load_config_file(default)

    tool_cfg = config_data.get("cargo_lens") if isinstance(config_data, dict) else {}
    if not isinstance(tool_cfg, dict):
        tool_cfg = {}

    index_url = strip_sparse_prefix(
        os.environ.get("CARGO_LENS_INDEX_URL") or str(tool_cfg.get("crates_io_index") or "") or CRATES_IO_INDEX
    )
    cache_id = str(tool_cfg.get("crates_io_cache") or CRATES_IO_CACHE)
    docs = str(tool_cfg.get("docs_url") or DOCS_RS)

    default_registry = Registry(index=index_url, cache=cache_id, docs=docs)
    secondary: list[Registry] = []

    if use_cargo_config is None:
        env_use_cargo_config = _env_bool("CARGO_LENS_USE_CARGO_CONFIG")
        use_cargo_config = (
            env_use_cargo_config
            if env_use_cargo_config is not None
            else bool(tool_cfg.get("use_cargo_config") or False)
        )
    if use_cargo_config:
        cargo_default, cargo_secondary = load_cargo_registries(cargo_home(), docs=docs)
        if cargo_default is not None:
            default_registry = cargo_default
        secondary.extend(cargo_secondary)

    for entry in tool_cfg.get("registries") or []:
        if isinstance(entry, dict):
            reg = _registry_from_dict(entry, docs=docs)
            if reg is not None:
                secondary.append(reg)

    index = IndexSettings(
        timeout_s=float(tool_cfg.get("timeout_s") or 30.0),
        retries=int(tool_cfg.get("retries") or 0),
        max_connections=int(tool_cfg.get("max_connections") or 6),
    )

    env_use_cache = _env_bool("CARGO_LENS_USE_CARGO_CACHE")
    if env_use_cache is not None:
        use_cargo_cache = env_use_cache
    else:
        use_cargo_cache = bool(tool_cfg.get("use_cargo_cache") if "use_cargo_cache" in tool_cfg else True)

    return AppConfig(
        registries=Registries(default=default_registry, secondary=tuple(secondary)),
        index=index,
        use_cargo_cache=use_cargo_cache,
        cache_ttl_s=int(tool_cfg.get("cache_ttl_s") or DEFAULT_TTL_S),
        log_level=tool_cfg.get("log_level") or None,
        log_format=tool_cfg.get("log_format") or None,
    )
