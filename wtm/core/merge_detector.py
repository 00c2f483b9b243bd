"""分支合并状态检测

三层检测：
    1. merge-base --is-ancestor：普通合并或快进
    2. rev-list --left-right --count：领先/落后计数
    3. squash 合并：用分支的 tree 和 merge-base 构造一个临时提交，写入隔离的
       对象目录（不污染仓库对象库），再用 git cherry 判断补丁是否已在目标分支

浅克隆默认按失败关闭处理：历史不足时结果标记为 shallow，不允许自动删除。
"""

import shutil
import tempfile
from pathlib import Path
from typing import Optional

from wtm.core.data_structures import DetectionIssue, MergeMethod, MergeResult
from wtm.core.env import (
    ENV_NO_DETECTION,
    ENV_NO_SQUASH_DETECTION,
    ENV_SHALLOW_OK,
    env_flag,
    resolve_detection_timeout_ms,
)
from wtm.core.exceptions import GitCommandError, GitTimeoutError
from wtm.core.git_client import GitClient
from wtm.core.logger import get_logger

logger = get_logger("merge_detector")

# 领先提交超过该值时跳过 squash 检测
SQUASH_AHEAD_LIMIT = 50


def _error(code: str, message: str) -> DetectionIssue:
    return DetectionIssue(code=code, severity="error", message=message)


def _warning(code: str, message: str) -> DetectionIssue:
    return DetectionIssue(code=code, severity="warning", message=message)


class MergeDetector:
    """合并检测器"""

    def __init__(
        self,
        git: GitClient,
        shallow_ok: Optional[bool] = None,
        timeout_ms: Optional[int] = None,
    ):
        """初始化

        Args:
            git: Git 客户端
            shallow_ok: 跳过浅克隆保护，None 时读取 WTM_SHALLOW_OK
            timeout_ms: squash 检测超时，None 时读取环境变量或默认 5000

        Raises:
            ConcurrencyConfigError: 超时配置无效
        """
        self.git = git
        self.shallow_ok = env_flag(ENV_SHALLOW_OK) if shallow_ok is None else shallow_ok
        self.timeout_ms = resolve_detection_timeout_ms(timeout_ms)
        self._shallow: Optional[bool] = None

    @property
    def is_shallow(self) -> bool:
        if self._shallow is None:
            self._shallow = self.git.is_shallow()
        return self._shallow

    def detect(self, branch: str, target: str) -> MergeResult:
        """检测 branch 是否已合并进 target

        任何 git 失败都记录为 issue 并返回未合并，不抛出异常。
        """
        if env_flag(ENV_NO_DETECTION):
            return MergeResult(issues=[_warning("detection-disabled", f"{ENV_NO_DETECTION} is set")])

        if self.is_shallow and not self.shallow_ok:
            return MergeResult(
                shallow=True,
                issues=[_error(
                    "shallow-clone",
                    "Repository is a shallow clone; merge status cannot be trusted",
                )],
            )

        branch_ref = f"refs/heads/{branch}"
        target_ref = f"refs/heads/{target}"
        result = MergeResult()

        # 第 2 层先算，便于所有路径都带上计数
        counts = self.git.run(
            ["git", "rev-list", "--left-right", "--count", f"{branch_ref}...{target_ref}"]
        )
        if counts.ok:
            parts = counts.output.split()
            if len(parts) == 2 and all(p.isdigit() for p in parts):
                result.ahead, result.behind = int(parts[0]), int(parts[1])
        else:
            result.issues.append(_error("rev-list-failed", counts.stderr.strip()))
            return result

        # 第 1 层：祖先关系
        ancestor = self.git.run(["git", "merge-base", "--is-ancestor", branch_ref, target_ref])
        if ancestor.returncode == 0:
            result.merged = True
            result.method = MergeMethod.ANCESTOR
            return result
        if ancestor.returncode >= 128 or ancestor.returncode < 0:
            result.issues.append(_error("merge-base-failed", ancestor.stderr.strip()))
            return result

        # 第 3 层：squash 合并
        if env_flag(ENV_NO_SQUASH_DETECTION):
            return result
        if result.ahead > SQUASH_AHEAD_LIMIT:
            result.issues.append(_warning(
                "squash-skipped",
                f"{result.ahead} commits ahead exceeds squash detection limit",
            ))
            return result

        try:
            if self._is_squash_merged(branch_ref, target_ref):
                result.merged = True
                result.method = MergeMethod.SQUASH
        except GitTimeoutError:
            result.issues.append(_warning(
                "squash-timeout",
                f"Squash detection exceeded {self.timeout_ms}ms",
            ))
        except GitCommandError as e:
            result.issues.append(_warning("squash-failed", e.details or e.message))

        return result

    def _is_squash_merged(self, branch_ref: str, target_ref: str) -> bool:
        merge_base = self.git.run_command(["git", "merge-base", branch_ref, target_ref])
        tree = self.git.run_command(["git", "rev-parse", f"{branch_ref}^{{tree}}"])
        objects_dir = self.git.get_common_dir() / "objects"

        scratch = tempfile.mkdtemp(prefix="wtm-squash-")
        try:
            env = {
                "GIT_OBJECT_DIRECTORY": scratch,
                "GIT_ALTERNATE_OBJECT_DIRECTORIES": str(objects_dir),
            }
            synthetic = self.git.run(
                ["git", "commit-tree", tree, "-p", merge_base, "-m", "wtm squash probe"],
                env=dict(env, **{
                    "GIT_AUTHOR_NAME": "wtm",
                    "GIT_AUTHOR_EMAIL": "wtm@localhost",
                    "GIT_COMMITTER_NAME": "wtm",
                    "GIT_COMMITTER_EMAIL": "wtm@localhost",
                }),
            )
            if not synthetic.ok:
                raise GitCommandError("commit-tree failed", details=synthetic.stderr.strip())

            cherry = self.git.run(
                ["git", "cherry", target_ref, synthetic.output],
                env=env,
                timeout=self.timeout_ms / 1000.0,
            )
            if not cherry.ok:
                raise GitCommandError("git cherry failed", details=cherry.stderr.strip())
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        lines = [line for line in cherry.output.splitlines() if line.strip()]
        # "-" 表示等价补丁已在目标分支
        return bool(lines) and all(line.startswith("- ") for line in lines)
