"""WTM 核心数据结构定义

定义所有核心业务对象，包括 WorktreeInfo、WorktreeStatus、BackupRef、
CleanResult 等。所有结果对象都提供 to_dict() 用于事件负载。"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum
from pathlib import Path


DETACHED_BRANCH = "(detached)"


@dataclass
class GitStatus:
    """Git 状态信息"""
    staged: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)
    conflicted: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        """是否为干净状态"""
        return not any([self.staged, self.modified, self.untracked, self.conflicted])


@dataclass
class WorktreeInfo:
    """Worktree 信息（每次查询重新生成，不缓存）"""
    path: Path
    branch: str
    head: str
    is_main: bool = False
    locked: bool = False
    lock_reason: Optional[str] = None
    prunable: bool = False
    is_detached: bool = False
    is_bare: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': str(self.path),
            'branch': self.branch,
            'head': self.head,
            'is_main': self.is_main,
            'locked': self.locked,
            'lock_reason': self.lock_reason,
            'prunable': self.prunable,
            'is_detached': self.is_detached,
            'is_bare': self.is_bare,
        }


@dataclass
class WorktreeStatus:
    """Worktree 状态快照（只读，按需或每个 watch tick 重新计算）"""
    info: WorktreeInfo
    ahead: int = 0
    behind: int = 0
    staged: int = 0
    modified: int = 0
    untracked: int = 0
    upstream_gone: bool = False
    last_commit_at: Optional[str] = None
    last_commit_message: Optional[str] = None
    error: Optional[str] = None

    @property
    def branch(self) -> str:
        return self.info.branch

    @property
    def path(self) -> Path:
        return self.info.path

    @property
    def dirty(self) -> bool:
        """是否有未提交的改动"""
        return (self.staged + self.modified + self.untracked) > 0

    @property
    def status_text(self) -> str:
        """人类可读的状态字符串"""
        if self.error:
            return "error"
        # 没有领先提交即为主分支的祖先
        return build_status_string(
            merged=self.ahead == 0,
            dirty=self.dirty,
            ahead=self.ahead,
            behind=self.behind,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.info.to_dict()
        data.update({
            'ahead': self.ahead,
            'behind': self.behind,
            'staged': self.staged,
            'modified': self.modified,
            'untracked': self.untracked,
            'dirty': self.dirty,
            'upstream_gone': self.upstream_gone,
            'last_commit_at': self.last_commit_at,
            'last_commit_message': self.last_commit_message,
            'error': self.error,
        })
        return data


class MergeMethod(Enum):
    """合并方式"""
    ANCESTOR = "ancestor"
    SQUASH = "squash"


@dataclass
class DetectionIssue:
    """合并检测过程中的问题"""
    code: str
    severity: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'severity': self.severity, 'message': self.message}


@dataclass
class MergeResult:
    """合并检测结果"""
    merged: bool = False
    method: Optional[MergeMethod] = None
    ahead: int = 0
    behind: int = 0
    shallow: bool = False
    issues: List[DetectionIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'merged': self.merged,
            'method': self.method.value if self.method else None,
            'ahead': self.ahead,
            'behind': self.behind,
            'shallow': self.shallow,
            'issues': [issue.to_dict() for issue in self.issues],
        }


class OrphanStatus(Enum):
    """孤立分支状态"""
    MERGED = "merged"
    GONE = "gone"
    UNMERGED = "unmerged"
    UNKNOWN = "unknown"


@dataclass
class OrphanBranch:
    """没有关联 worktree 的分支"""
    branch: str
    status: OrphanStatus
    merge: MergeResult = field(default_factory=MergeResult)
    upstream_gone: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'branch': self.branch,
            'status': self.status.value,
            'upstream_gone': self.upstream_gone,
            'merge': self.merge.to_dict(),
        }


class DeleteReason(Enum):
    """删除前检查的阻断原因"""
    NOT_FOUND = "not-found"
    IS_MAIN = "is-main"
    DIRTY = "dirty"
    LOCKED = "locked"
    AHEAD = "ahead"
    SHALLOW_UNSAFE = "shallow-unsafe"


@dataclass
class DeleteCheck:
    """单个 worktree 的删除前检查结论"""
    branch: str
    path: Path
    exists: bool = True
    dirty: bool = False
    locked: bool = False
    merged: bool = False
    merge_method: Optional[MergeMethod] = None
    ahead: int = 0
    behind: int = 0
    reasons: List[DeleteReason] = field(default_factory=list)

    @property
    def safe(self) -> bool:
        return not self.reasons

    @property
    def status_text(self) -> str:
        return build_status_string(
            merged=self.merged,
            dirty=self.dirty,
            ahead=self.ahead,
            behind=self.behind,
            method=self.merge_method,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'branch': self.branch,
            'path': str(self.path),
            'exists': self.exists,
            'dirty': self.dirty,
            'locked': self.locked,
            'merged': self.merged,
            'merge_method': self.merge_method.value if self.merge_method else None,
            'ahead': self.ahead,
            'behind': self.behind,
            'reasons': [reason.value for reason in self.reasons],
            'status': self.status_text,
        }


@dataclass
class BackupRef:
    """备份引用"""
    ref: str
    branch: str
    commit: str
    created_at: datetime
    source_path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ref': self.ref,
            'branch': self.branch,
            'commit': self.commit,
            'created_at': self.created_at.isoformat(),
            'source_path': str(self.source_path) if self.source_path else None,
        }


@dataclass
class RestoreResult:
    """备份恢复结果"""
    ref: str
    branch: str
    commit: str
    branch_created: bool
    worktree_path: Optional[Path] = None
    worktree_created: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ref': self.ref,
            'branch': self.branch,
            'commit': self.commit,
            'branch_created': self.branch_created,
            'worktree_path': str(self.worktree_path) if self.worktree_path else None,
            'worktree_created': self.worktree_created,
        }


class SkipReason(Enum):
    """清理时跳过的原因"""
    DIRTY = "dirty"
    LOCKED = "locked"
    AHEAD = "ahead"
    SHALLOW_UNSAFE = "shallow-unsafe"
    USER_DECLINED = "user-declined"
    UNKNOWN_STATUS = "unknown-status"
    BACKUP_FAILED = "backup-failed"
    REMOVE_FAILED = "remove-failed"


@dataclass
class CleanedWorktree:
    """已清理（或 dry-run 下将被清理）的条目"""
    branch: str
    path: Optional[Path]
    backup_ref: Optional[str] = None
    branch_deleted: bool = False
    merge_method: Optional[MergeMethod] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'branch': self.branch,
            'path': str(self.path) if self.path else None,
            'backup_ref': self.backup_ref,
            'branch_deleted': self.branch_deleted,
            'merge_method': self.merge_method.value if self.merge_method else None,
        }


@dataclass
class SkippedWorktree:
    """被跳过的条目"""
    branch: str
    path: Optional[Path]
    reason: SkipReason
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'branch': self.branch,
            'path': str(self.path) if self.path else None,
            'reason': self.reason.value,
            'error': self.error,
        }


@dataclass
class CleanResult:
    """批量清理结果"""
    cleaned: List[CleanedWorktree] = field(default_factory=list)
    skipped: List[SkippedWorktree] = field(default_factory=list)
    dry_run: bool = False
    forced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cleaned': [item.to_dict() for item in self.cleaned],
            'skipped': [item.to_dict() for item in self.skipped],
            'dry_run': self.dry_run,
            'forced': self.forced,
        }


class SyncAction(Enum):
    """文件同步动作"""
    COPIED = "copied"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class SyncedFile:
    """单个文件的同步结果"""
    relative_path: str
    action: SyncAction
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'relative_path': self.relative_path,
            'action': self.action.value,
            'reason': self.reason,
        }


@dataclass
class WorktreeSyncResult:
    """单个 worktree 的同步结果"""
    branch: str
    path: Path
    files: List[SyncedFile] = field(default_factory=list)
    dry_run: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def files_copied(self) -> int:
        return sum(1 for f in self.files if f.action == SyncAction.COPIED)

    @property
    def files_skipped(self) -> int:
        return sum(1 for f in self.files if f.action == SyncAction.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'branch': self.branch,
            'path': str(self.path),
            'ok': self.ok,
            'error': self.error,
            'dry_run': self.dry_run,
            'files_copied': self.files_copied,
            'files_skipped': self.files_skipped,
            'files': [f.to_dict() for f in self.files],
        }


@dataclass
class SyncResult:
    """多个 worktree 的同步结果，允许部分成功"""
    results: List[WorktreeSyncResult] = field(default_factory=list)
    dry_run: bool = False

    @property
    def succeeded(self) -> List[WorktreeSyncResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[WorktreeSyncResult]:
        return [r for r in self.results if not r.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dry_run': self.dry_run,
            'succeeded': len(self.succeeded),
            'failed': len(self.failed),
            'results': [r.to_dict() for r in self.results],
        }


class InstallStatus(Enum):
    """依赖安装状态"""
    INSTALLED = "installed"
    UP_TO_DATE = "up-to-date"
    NO_PACKAGE_JSON = "no-package-json"
    FAILED = "failed"


@dataclass
class InstallResult:
    """依赖安装结果"""
    status: InstallStatus
    command: Optional[str] = None
    duration_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'command': self.command,
            'duration_ms': self.duration_ms,
            'error': self.error,
        }


@dataclass
class CreateResult:
    """创建或挂载 worktree 的结果"""
    branch: str
    path: Path
    attached: bool = False
    branch_created: bool = False
    start_point: Optional[str] = None
    files_copied: int = 0
    install: Optional[InstallResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'branch': self.branch,
            'path': str(self.path),
            'attached': self.attached,
            'branch_created': self.branch_created,
            'start_point': self.start_point,
            'files_copied': self.files_copied,
            'install': self.install.to_dict() if self.install else None,
        }


@dataclass
class DeleteResult:
    """删除 worktree 的结果"""
    branch: str
    path: Path
    backup_ref: str
    branch_deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'branch': self.branch,
            'path': str(self.path),
            'backup_ref': self.backup_ref,
            'branch_deleted': self.branch_deleted,
        }


def build_status_string(
    merged: bool,
    dirty: bool,
    ahead: int,
    behind: int = 0,
    method: Optional[MergeMethod] = None,
) -> str:
    """根据合并/脏状态生成显示用的状态字符串

    与主分支处于同一提交的已合并分支显示为 pristine（或 dirty），
    只有主分支继续前进后才显示为 merged。
    """
    merged_label = "merged (squash)" if method == MergeMethod.SQUASH else "merged"

    if merged and ahead == 0 and behind == 0:
        return "dirty" if dirty else "pristine"
    if merged:
        return f"{merged_label}, dirty" if dirty else merged_label

    parts = []
    if ahead > 0:
        parts.append(f"{ahead} ahead")
    if behind > 0:
        parts.append(f"{behind} behind")
    if dirty:
        parts.append("dirty")
    return ", ".join(parts) if parts else "unknown"


# 类型别名
WorktreeList = List[WorktreeInfo]
