from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tomlkit import parse
from tomlkit.container import Container
from tomlkit.exceptions import ParseError, TOMLKitError
from tomlkit.items import AoT, Key, Null, Table, Whitespace

from cargo_lens.models import Dependency, DependencyKind
from cargo_lens.ranges import translate

_DEPENDENCY_KEYS = {kind.value: kind for kind in DependencyKind}


class ManifestParseError(ValueError):
    """
    Cargo.toml 无法解析（line/column 从 1 开始，可能未知）。
    """

    def __init__(self, message: str, *, line: int | None = None, column: int | None = None) -> None:
        super().__init__(message)
        self.line = line
        self.column = column


@dataclass(frozen=True, slots=True)
class ManifestTable:
    """
    文档中一个 ``[header]`` 表：只包含直接写在该表头下的键。

    ``lines`` 以相对表头的点分键为索引，值为该键所在的行（从 0 开始）。
    """

    keys: tuple[str, ...]
    values: dict[str, Any] = field(default_factory=dict)
    lines: dict[tuple[str, ...], int] = field(default_factory=dict)


@dataclass(slots=True)
class _Section:
    keys: tuple[str, ...]
    lines: dict[tuple[str, ...], int] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)


def _newlines(text: str) -> int:
    return text.count("\n")


def _renders_header(key: Key, table: Table) -> bool:
    """
    判断 tomlkit 输出文档时是否为该表写出 ``[header]`` 行。

    隐式父表（``[a.b]`` 中的 ``a``）与点分键产生的表没有自己的表头。
    """
    if not table.is_super_table():
        return True
    if key.is_dotted():
        return False
    for k, v in table.value.body:
        if not isinstance(v, (Table, AoT, Whitespace, Null)):
            return True
        if isinstance(v, Table) and k is not None and k.is_dotted():
            return True
    return False


class _LayoutWalker:
    """
    按 tomlkit 文档的输出顺序遍历各项，累计换行数得到每个表头与键所在的行。
    """

    def __init__(self) -> None:
        self.line = 0
        self.sections: list[_Section] = []

    def walk(
        self,
        container: Container,
        path: tuple[str, ...],
        section: _Section | None,
        rel: tuple[str, ...],
    ) -> None:
        for key, item in container.body:
            if key is None:
                self.line += _newlines(item.as_string())
            elif isinstance(item, AoT):
                # 数组表不是依赖表，只统计行数
                for element in item.body:
                    trivia = element.trivia
                    self.line += _newlines(trivia.indent) + _newlines(trivia.trail)
                    self.line += _newlines(element.as_string())
            elif isinstance(item, Table):
                self._walk_table(key, item, path, section, rel)
            else:
                self.line += _newlines(item.trivia.indent)
                if section is not None:
                    keys = rel + (key.key,)
                    section.lines.setdefault(keys, self.line)
                    if keys[0] not in section.order:
                        section.order.append(keys[0])
                self.line += _newlines(item.as_string()) + _newlines(item.trivia.trail)

    def _walk_table(
        self,
        key: Key,
        table: Table,
        path: tuple[str, ...],
        section: _Section | None,
        rel: tuple[str, ...],
    ) -> None:
        trivia = table.trivia
        full_path = path + (key.key,)
        if _renders_header(key, table):
            self.line += _newlines(trivia.indent)
            header = _Section(keys=full_path)
            self.sections.append(header)
            self.line += _newlines(trivia.trail)
            if "\n" not in trivia.trail and len(table.value) > 0:
                self.line += 1
            self.walk(table.value, full_path, header, ())
            return

        if trivia.indent == "\n":
            self.line += 1
        if key.is_dotted():
            self.walk(table.value, full_path, section, rel + (key.key,))
        else:
            self.walk(table.value, full_path, None, ())


def _lookup(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def parse_manifest(text: str) -> list[ManifestTable]:
    """
    解析 Cargo.toml 文本，按文档顺序返回所有 ``[header]`` 表节点。
    """
    try:
        doc = parse(text)
        data = doc.unwrap()
    except ParseError as exc:
        raise ManifestParseError(str(exc), line=exc.line, column=exc.col + 1) from exc
    except TOMLKitError as exc:
        raise ManifestParseError(str(exc)) from exc

    walker = _LayoutWalker()
    walker.walk(doc, (), None, ())

    tables: list[ManifestTable] = []
    for section in walker.sections:
        node = _lookup(data, section.keys)
        values = {}
        if isinstance(node, dict):
            values = {k: node[k] for k in section.order if k in node}
        tables.append(ManifestTable(keys=section.keys, values=values, lines=section.lines))
    return tables


def load_manifest(manifest_path: Path) -> list[ManifestTable]:
    """
    读取并解析 Cargo.toml 文件（必须是 UTF-8）。
    """
    raw = manifest_path.read_bytes()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ManifestParseError(f"manifest is not valid UTF-8: {exc}") from exc
    return parse_manifest(text)


def _single_dependency(
    alias: str,
    body: dict[str, Any],
    *,
    kind: DependencyKind,
    version_line: int | None,
) -> Dependency | None:
    """
    解析单个依赖的表体（``[dependencies.foo]`` 或内联表）；没有合法版本要求时返回 None。
    """
    requirement = body.get("version")
    if not isinstance(requirement, str) or version_line is None:
        return None
    version_range = translate(requirement)
    if version_range is None:
        return None

    package = body.get("package")
    registry = body.get("registry")
    return Dependency(
        kind=kind,
        alias=alias,
        name=package if isinstance(package, str) else alias,
        requirement=requirement,
        version_range=version_range,
        registry=registry if isinstance(registry, str) else None,
        line=version_line,
    )


def _multiple_dependencies(table: ManifestTable, *, kind: DependencyKind) -> list[Dependency]:
    """
    解析包含多个依赖的表（``[dependencies]`` 等）。
    """
    deps: list[Dependency] = []
    for alias, value in table.values.items():
        if isinstance(value, str):
            version_range = translate(value)
            line = table.lines.get((alias,))
            if version_range is None or line is None:
                continue
            deps.append(
                Dependency(
                    kind=kind,
                    alias=alias,
                    name=alias,
                    requirement=value,
                    version_range=version_range,
                    registry=None,
                    line=line,
                )
            )
        elif isinstance(value, dict):
            line = table.lines.get((alias, "version"), table.lines.get((alias,)))
            dep = _single_dependency(alias, value, kind=kind, version_line=line)
            if dep is not None:
                deps.append(dep)
    return deps


def _classify_table(keys: tuple[str, ...]) -> tuple[DependencyKind, str | None] | None:
    """
    判断表路径是否为依赖表；返回 (依赖类别, 单依赖表的 crate 名或 None)。
    """
    if len(keys) == 1 and keys[0] in _DEPENDENCY_KEYS:
        return _DEPENDENCY_KEYS[keys[0]], None
    if len(keys) == 2:
        if keys[0] in _DEPENDENCY_KEYS:
            return _DEPENDENCY_KEYS[keys[0]], keys[1]
        if keys[0] == "workspace" and keys[1] in _DEPENDENCY_KEYS:
            return _DEPENDENCY_KEYS[keys[1]], None
        return None
    if len(keys) == 3:
        if keys[0] == "workspace" and keys[1] in _DEPENDENCY_KEYS:
            return _DEPENDENCY_KEYS[keys[1]], keys[2]
        if keys[0] == "target" and keys[2] in _DEPENDENCY_KEYS:
            return _DEPENDENCY_KEYS[keys[2]], None
        return None
    if len(keys) == 4 and keys[0] == "target" and keys[2] in _DEPENDENCY_KEYS:
        return _DEPENDENCY_KEYS[keys[2]], keys[3]
    return None


def extract_dependencies(tables: list[ManifestTable]) -> list[Dependency]:
    """
    从表节点中抽取所有带合法 semver 要求的 registry 依赖。
    """
    deps: list[Dependency] = []
    for table in tables:
        shape = _classify_table(table.keys)
        if shape is None:
            continue
        kind, crate = shape
        if crate is None:
            deps.extend(_multiple_dependencies(table, kind=kind))
            continue
        dep = _single_dependency(crate, table.values, kind=kind, version_line=table.lines.get(("version",)))
        if dep is not None:
            deps.append(dep)
    return deps
