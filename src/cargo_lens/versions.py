from __future__ import annotations

from dataclasses import dataclass

from semantic_version import Version

from cargo_lens.models import CheckStatus
from cargo_lens.ranges import VersionRange


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    """
    版本对比的结果：满足要求的最高版本、最新稳定版、最新版与状态。
    """

    resolved: Version | None
    latest_stable: Version | None
    latest: Version
    status: CheckStatus
    recommended: Version | None


def latest_stable_version(versions: list[Version]) -> Version | None:
    """
    返回不带 pre-release 的最高版本；全部为 pre-release 时返回 None。
    """
    stable = [v for v in versions if not v.prerelease]
    return max(stable) if stable else None


def classify(version_range: VersionRange, versions: list[Version]) -> ResolutionResult:
    """
    将版本要求与可用版本列表对比，得出 resolved/latest_stable/latest 以及状态。

    resolved 低于 latest 时：
    - 没有稳定版，或 resolved 是高于所有稳定版的 pre-release：可升级到 latest；
    - resolved 等于最新稳定版：视为最新（仅有更新的 pre-release）；
    - 否则：可升级到最新稳定版。
    """
    if not versions:
        raise ValueError("versions must not be empty")

    ordered = sorted(versions, reverse=True)
    latest = ordered[0]
    latest_stable = latest_stable_version(ordered)
    resolved = version_range.spec.select(ordered)

    if resolved is None:
        return ResolutionResult(
            resolved=None,
            latest_stable=latest_stable,
            latest=latest,
            status=CheckStatus.UNSATISFIABLE,
            recommended=None,
        )

    status = CheckStatus.UP_TO_DATE
    recommended: Version | None = None
    if resolved < latest:
        if latest_stable is None or latest_stable < resolved:
            status, recommended = CheckStatus.UPGRADABLE, latest
        elif resolved != latest_stable:
            status, recommended = CheckStatus.UPGRADABLE, latest_stable

    return ResolutionResult(
        resolved=resolved,
        latest_stable=latest_stable,
        latest=latest,
        status=status,
        recommended=recommended,
    )
