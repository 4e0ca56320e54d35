from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
import sys

from cargo_lens.config import AppConfig, Registry, load_config, strip_sparse_prefix
from cargo_lens.manifest import ManifestParseError


def build_parser() -> argparse.ArgumentParser:
    """
    构建 cargo-lens 的命令行参数解析器。
    """
    parser = argparse.ArgumentParser(prog="cargo-lens")
    parser.add_argument(
        "--version",
        action="store_true",
        help="输出版本号并退出",
    )
    parser.add_argument("--config", help="配置文件路径（.toml 或 .yaml）")
    parser.add_argument(
        "--manifest",
        default="Cargo.toml",
        help="Cargo.toml 路径（默认：Cargo.toml）",
    )
    parser.add_argument("--index-url", help="默认 registry 的 sparse 索引地址（http(s):// 或 file://）")
    parser.add_argument("--no-cargo-cache", action="store_true", help="不读取 Cargo 本地索引缓存")
    parser.add_argument(
        "--use-cargo-config",
        action="store_true",
        help="读取 CARGO_HOME 下 config.toml 与 credentials.toml 中的 registry",
    )
    parser.add_argument("--timeout", type=float, help="单次请求超时秒数")
    parser.add_argument("--retries", type=int, help="网络错误重试次数")
    parser.add_argument("--log-level", help="日志级别（DEBUG/INFO/WARNING/ERROR）")
    parser.add_argument("--log-format", choices=["console", "json"], help="日志格式")

    subparsers = parser.add_subparsers(dest="command")

    check = subparsers.add_parser("check", help="检查依赖版本并输出报告")
    check.add_argument("--format", choices=["table", "json", "md"], default="table", help="输出格式")
    check.add_argument("--output", help="输出到文件（默认 stdout）")

    return parser


def _merge_cli_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    """
    将 CLI 参数覆盖合并到 AppConfig。
    """
    registries = cfg.registries
    if args.index_url:
        default = registries.default
        # 自定义索引不再对应 crates.io 的本地缓存目录
        registries = replace(
            registries,
            default=Registry(index=strip_sparse_prefix(args.index_url), cache=None, docs=default.docs, name=default.name),
        )

    index = cfg.index
    if args.timeout is not None:
        index = replace(index, timeout_s=float(args.timeout))
    if args.retries is not None:
        index = replace(index, retries=int(args.retries))

    return replace(
        cfg,
        registries=registries,
        index=index,
        use_cargo_cache=cfg.use_cargo_cache and not bool(args.no_cargo_cache),
        log_level=args.log_level or cfg.log_level,
        log_format=args.log_format or cfg.log_format,
    )


def main(argv: list[str] | None = None) -> int:
    """
    cargo-lens 命令行入口。
    """
    args = build_parser().parse_args(argv)

    if args.version:
        from cargo_lens import __version__

        print(__version__)
        return 0

    if args.command is None:
        build_parser().print_help(sys.stderr)
        return 2

    use_cargo_config = True if args.use_cargo_config else None
    cfg = _merge_cli_overrides(load_config(args.config, use_cargo_config=use_cargo_config), args)
    manifest_path = Path(args.manifest)

    from cargo_lens.logging import setup_logging

    setup_logging(cfg.log_level, cfg.log_format)

    if args.command == "check":
        from cargo_lens.app import run_check
        from cargo_lens.formatters import print_table, render_json, render_markdown

        try:
            report = run_check(manifest_path, config=cfg)
        except ManifestParseError as exc:
            where = f"（line {exc.line}, column {exc.column}）" if exc.line is not None else ""
            print(f"cargo-lens: 解析失败{where}：{exc}", file=sys.stderr)
            return 1
        except OSError as exc:
            print(f"cargo-lens: 读取失败：{exc}", file=sys.stderr)
            return 1
        output_path = getattr(args, "output", None)
        if args.format == "table":
            if output_path:
                with open(output_path, "w", encoding="utf-8") as f:
                    print_table(report, file=f)
            else:
                print_table(report)
            return 0
        if args.format == "json":
            text = render_json(report)
        else:
            text = render_markdown(report)
        if output_path:
            Path(output_path).write_text(text, encoding="utf-8")
        else:
            print(text)
        return 0

    print(f"cargo-lens: 未知子命令 {args.command!r}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
