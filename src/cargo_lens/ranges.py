from __future__ import annotations

import re
from dataclasses import dataclass, field

from semantic_version import NpmSpec

_LEADING_DIGIT_RE = re.compile(r"^[0-9]")
_OPERATOR_SPACE_RE = re.compile(r"^(<=|>=|<|>|=|~|\^)\s+")


@dataclass(frozen=True, slots=True)
class VersionRange:
    """
    规范化后的 semver 范围；以规范表达式判等。
    """

    expression: str
    spec: NpmSpec = field(compare=False, repr=False)

    def __str__(self) -> str:
        return self.expression


def plain_version_fix(clause: str) -> str:
    """
    Cargo 将不带运算符的版本号视为 caret 要求（1.2.3 即 ^1.2.3），
    而 npm 风格的范围会将其视为精确匹配；以数字开头的子句补上 ``^``。

    | 要求  | Cargo            | 未修正           |
    | ----- | ---------------- | ---------------- |
    | 1.2.3 | >=1.2.3 <2.0.0-0 | =1.2.3           |
    | 2.0   | >=2.0.0 <3.0.0-0 | >=2.0.0 <2.1.0-0 |
    | 0.3.4 | >=0.3.4 <0.4.0-0 | =0.3.4           |
    """
    if _LEADING_DIGIT_RE.match(clause):
        return f"^{clause}"
    return clause


def translate(requirement: str) -> VersionRange | None:
    """
    将 Cargo 版本要求（逗号分隔的 AND 子句）转换为 VersionRange，无法解析时返回 None。

    运算符与版本号之间的空白会被去掉（``>= 1.0`` 等价于 ``>=1.0``）。
    """
    clauses = [plain_version_fix(_OPERATOR_SPACE_RE.sub(r"\1", c.strip())) for c in requirement.split(",")]
    expression = " ".join(c for c in clauses if c)
    if not expression:
        return None
    try:
        spec = NpmSpec(expression)
    except ValueError:
        return None
    return VersionRange(expression=expression, spec=spec)
