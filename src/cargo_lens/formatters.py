from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any, TextIO

from rich.console import Console
from rich.table import Table

from cargo_lens.models import CheckStatus
from cargo_lens.report import Report, ReportItem

SYMBOL_UP_TO_DATE = "✅"
SYMBOL_UPGRADABLE = "❌"
SYMBOL_ERROR = "❗❗❗"

_VERSION_FIELDS = ("resolved", "latest_stable", "latest", "recommended")


def status_symbol(item: ReportItem) -> str:
    """
    返回条目的简短状态标记（可升级时附带建议版本）。
    """
    if item.status == CheckStatus.UP_TO_DATE:
        return SYMBOL_UP_TO_DATE
    if item.status == CheckStatus.UPGRADABLE:
        return f"{SYMBOL_UPGRADABLE} {item.recommended}"
    return SYMBOL_ERROR


def report_to_json_obj(report: Report) -> dict[str, Any]:
    """
    将报告转换为可 JSON 序列化的字典结构。
    """
    data = asdict(report)
    for item in data.get("items", []):
        for key in _VERSION_FIELDS:
            if item.get(key) is not None:
                item[key] = str(item[key])
        if item.get("kind") is not None:
            item["kind"] = item["kind"].value
        if item.get("status") is not None:
            item["status"] = item["status"].value
    return data


def render_json(report: Report) -> str:
    """
    渲染 JSON 输出。
    """
    return json.dumps(report_to_json_obj(report), ensure_ascii=False, indent=2)


def _version_cell(value: object | None) -> str:
    return str(value) if value is not None else "-"


def _linked_cell(value: object | None, url: str | None) -> str:
    cell = _version_cell(value)
    if url and value is not None:
        return f"[{cell}]({url})"
    return cell


def render_markdown(report: Report) -> str:
    """
    渲染 Markdown 报告（表格 + 简要统计）；配置了文档地址时各版本列带链接。
    """
    lines: list[str] = []
    lines.append(
        f"# cargo-lens 报告\n\n- 文件：`{report.manifest_path}`\n- 缓存命中：{report.cache_hits}\n- 发起查询：{report.fetched}\n"
    )
    lines.append("| 行 | 分组 | crate | 要求 | resolved | 最新稳定 | 最新 | 状态 | 错误 |")
    lines.append("|---|---|---|---|---|---|---|---|---|")
    for item in report.items:
        resolved = _linked_cell(item.resolved, item.docs_url)
        latest_stable = _linked_cell(item.latest_stable, item.latest_stable_docs_url)
        latest = _linked_cell(item.latest, item.latest_docs_url)
        lines.append(
            f"| {item.line + 1} | {item.kind.value} | {item.name} | {item.requirement} | {resolved} "
            f"| {latest_stable} | {latest} "
            f"| {status_symbol(item)} | {item.error or '-'} |"
        )
    return "\n".join(lines) + "\n"


def print_table(report: Report, *, file: TextIO | None = None) -> None:
    """
    以控制台表格形式输出报告。
    """
    console = Console(file=file)
    table = Table(title="cargo-lens 依赖检查")
    table.add_column("行", no_wrap=True, justify="right")
    table.add_column("分组", no_wrap=True)
    table.add_column("crate", no_wrap=True)
    table.add_column("要求")
    table.add_column("resolved", no_wrap=True)
    table.add_column("最新稳定", no_wrap=True)
    table.add_column("最新", no_wrap=True)
    table.add_column("状态", no_wrap=True)
    table.add_column("错误")
    for item in report.items:
        table.add_row(
            str(item.line + 1),
            item.kind.value,
            item.name,
            item.requirement,
            _version_cell(item.resolved),
            _version_cell(item.latest_stable),
            _version_cell(item.latest),
            status_symbol(item),
            item.error or "-",
        )
    console.print(table)
    console.print(f"缓存命中：{report.cache_hits}，发起查询：{report.fetched}")
