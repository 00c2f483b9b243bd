"""WTM - Git Worktree 生命周期管理"""

__version__ = "0.1.0"
