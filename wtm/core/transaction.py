"""事务管理

破坏性操作（删除 worktree、删除分支）按步骤顺序执行：前一步成功后才执行
下一步。任何一步失败时，按逆序回滚已执行的步骤，并抛出
TransactionRollbackError，其中记录失败的步骤名。
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from wtm.core.exceptions import TransactionException, TransactionRollbackError
from wtm.core.logger import Logger, get_logger


class StepStatus(Enum):
    """步骤状态枚举"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Step:
    """事务中的一个步骤"""
    name: str
    execute_fn: Callable[[], Any]
    rollback_fn: Optional[Callable[[], None]] = None
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'status': self.status.value,
            'error': str(self.error) if self.error else None,
        }


class Transaction:
    """事务管理器

    用法:
        tx = Transaction("delete feature/a")
        tx.add_step("backup", create_backup)
        tx.add_step("remove", remove_worktree, rollback_fn=restore_worktree)
        tx.commit()
    """

    def __init__(self, description: str = "", logger: Optional[Logger] = None):
        self.transaction_id = str(uuid.uuid4())
        self.description = description
        self.logger = logger or get_logger("transaction")
        self.steps: List[Step] = []
        self.status = "pending"
        self.created_at = datetime.now(timezone.utc)

    def add_step(
        self,
        name: str,
        execute_fn: Callable[[], Any],
        rollback_fn: Optional[Callable[[], None]] = None,
    ) -> "Transaction":
        """添加步骤，返回 self 以支持链式调用

        Raises:
            TransactionException: 事务已提交或失败
        """
        if self.status != "pending":
            raise TransactionException(f"Cannot add step to {self.status} transaction")
        self.steps.append(Step(name, execute_fn, rollback_fn))
        return self

    def result_of(self, name: str) -> Any:
        """获取已完成步骤的返回值"""
        for step in self.steps:
            if step.name == name:
                return step.result
        raise KeyError(name)

    def commit(self) -> None:
        """按顺序执行所有步骤

        Raises:
            TransactionException: 事务不是 pending 状态
            TransactionRollbackError: 某一步失败（已回滚已执行的步骤）
        """
        if self.status != "pending":
            raise TransactionException(f"Cannot commit {self.status} transaction")

        self.status = "executing"
        executed: List[Step] = []

        for step in self.steps:
            try:
                step.result = step.execute_fn()
            except Exception as e:
                step.status = StepStatus.FAILED
                step.error = e
                self.logger.error(
                    "transaction_step_failed",
                    transaction_id=self.transaction_id,
                    description=self.description,
                    step=step.name,
                    error=str(e),
                )
                rollback_errors = self._rollback(executed)
                self.status = "failed"
                error = TransactionRollbackError(
                    f"Transaction '{self.description}' failed at step '{step.name}': {e}",
                    failed_step=step.name,
                    executed_steps=[s.name for s in executed],
                )
                if rollback_errors:
                    error.details = "rollback failed: " + "; ".join(rollback_errors)
                raise error from e

            step.status = StepStatus.COMPLETED
            executed.append(step)
            self.logger.debug(
                "transaction_step_completed",
                transaction_id=self.transaction_id,
                step=step.name,
            )

        self.status = "committed"
        self.logger.info(
            "transaction_committed",
            transaction_id=self.transaction_id,
            description=self.description,
            steps=len(self.steps),
        )

    def _rollback(self, executed: List[Step]) -> List[str]:
        """按逆序回滚，返回回滚失败的描述"""
        errors = []
        for step in reversed(executed):
            if step.rollback_fn is None:
                continue
            try:
                step.rollback_fn()
                step.status = StepStatus.ROLLED_BACK
            except Exception as e:
                self.logger.error(
                    "transaction_rollback_failed",
                    transaction_id=self.transaction_id,
                    step=step.name,
                    error=str(e),
                )
                errors.append(f"{step.name}: {e}")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transaction_id': self.transaction_id,
            'description': self.description,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
            'steps': [step.to_dict() for step in self.steps],
        }
