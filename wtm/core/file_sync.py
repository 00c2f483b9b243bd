"""共享文件复制与同步

把主 worktree 中被 gitignore 的配置文件（.env、CLAUDE.md 等）复制到
其他 worktree。同步时按内容哈希比较，只复制发生变化的文件。
"""

import fnmatch
import hashlib
import os
import shutil
from pathlib import Path
from typing import Iterable, List, Optional

from wtm.core.config_manager import WorktreeConfig
from wtm.core.data_structures import SyncAction, SyncedFile
from wtm.core.logger import get_logger

logger = get_logger("file_sync")

_RECURSIVE_PREFIX = "**/"


def hash_file(path: Path) -> Optional[str]:
    """计算文件内容哈希，读取失败时返回 None"""
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
    except OSError:
        return None
    return digest.hexdigest()


def is_excluded(relative_path: str, excludes: Iterable[str]) -> bool:
    """路径中任意一级目录匹配排除模式即排除"""
    patterns = list(excludes)
    return any(
        fnmatch.fnmatch(part, pattern)
        for part in Path(relative_path).parts
        for pattern in patterns
    )


def _match_recursive(relative_path: str, pattern: str) -> bool:
    tail = pattern[len(_RECURSIVE_PREFIX):]
    if "/" not in tail:
        return fnmatch.fnmatch(Path(relative_path).name, tail)
    return fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(relative_path, tail)


def _walk(root: Path, excludes: List[str]) -> Iterable[str]:
    """递归遍历目录，跳过排除的目录，返回相对 root 的 posix 路径"""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not is_excluded(d, excludes))
        for filename in sorted(filenames):
            full = Path(dirpath) / filename
            yield full.relative_to(root).as_posix()


def collect_files(source: Path, patterns: Iterable[str], excludes: Iterable[str]) -> List[str]:
    """收集需要复制的文件（相对路径）

    - 根目录模式（如 .env、.env.*）：在 source 根目录展开
    - 根目录下的目录（如 .claude）：递归收集其中的文件
    - 递归模式（如 **/CLAUDE.md）：遍历整个目录树
    """
    source = Path(source)
    excludes = list(excludes)
    seen = set()
    collected: List[str] = []

    def add(relative: str) -> None:
        if relative not in seen and not is_excluded(relative, excludes):
            seen.add(relative)
            collected.append(relative)

    root_patterns = [p for p in patterns if not p.startswith(_RECURSIVE_PREFIX)]
    recursive_patterns = [p for p in patterns if p.startswith(_RECURSIVE_PREFIX)]

    for pattern in root_patterns:
        for match in sorted(source.glob(pattern)):
            if match.is_file():
                add(match.relative_to(source).as_posix())
            elif match.is_dir():
                for relative in _walk(match, excludes):
                    add((match.relative_to(source) / relative).as_posix())

    if recursive_patterns:
        for relative in _walk(source, excludes):
            if any(_match_recursive(relative, pattern) for pattern in recursive_patterns):
                add(relative)

    return collected


class FileSyncManager:
    """共享文件管理器

    负责把主 worktree 的配置文件复制或同步到目标 worktree。
    """

    def __init__(self, source_root: Path, config: WorktreeConfig):
        """初始化

        Args:
            source_root: 主 worktree 路径（仓库根目录）
            config: worktree 配置，copy 为复制模式，exclude 为排除模式
        """
        self.source_root = Path(source_root)
        self.config = config
        # worktree 目录本身永远不参与复制
        self.excludes = list(config.exclude) + [Path(config.directory).parts[0]]

    def collect(self) -> List[str]:
        return collect_files(self.source_root, self.config.copy, self.excludes)

    def copy_files(self, dest: Path) -> int:
        """复制所有匹配的文件到新 worktree

        Returns:
            复制的文件数
        """
        dest = Path(dest)
        copied = 0
        for relative in self.collect():
            target = dest / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.source_root / relative, target)
            copied += 1

        logger.info("Worktree files copied", dest=str(dest), count=copied)
        return copied

    def sync_files(self, dest: Path, dry_run: bool = False) -> List[SyncedFile]:
        """按内容哈希同步文件

        单个文件失败记录为 error，不影响其余文件。
        """
        dest = Path(dest)
        results: List[SyncedFile] = []

        for relative in self.collect():
            src_path = self.source_root / relative
            dest_path = dest / relative

            src_hash = hash_file(src_path)
            dest_hash = hash_file(dest_path) if dest_path.exists() else None

            if src_hash is not None and src_hash == dest_hash:
                results.append(SyncedFile(relative, SyncAction.SKIPPED, "identical content"))
                continue

            reason = "new file" if dest_hash is None else "content changed"
            if dry_run:
                results.append(SyncedFile(relative, SyncAction.COPIED, reason))
                continue

            try:
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src_path, dest_path)
                results.append(SyncedFile(relative, SyncAction.COPIED, reason))
            except OSError as e:
                logger.warning("Failed to sync file", file=relative, error=str(e))
                results.append(SyncedFile(relative, SyncAction.ERROR, str(e)))

        copied = sum(1 for r in results if r.action == SyncAction.COPIED)
        logger.info(
            "Shared files sync completed",
            dest=str(dest),
            total=len(results),
            copied=copied,
            dry_run=dry_run,
        )
        return results
