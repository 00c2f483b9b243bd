"""有界并发任务执行器

把每个 worktree 的子进程型工作分发到线程池，同一时刻最多 limit 个在执行。
单个任务失败不会中止整批，结果顺序与输入顺序一致。
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

from wtm.core.env import resolve_concurrency
from wtm.core.logger import get_logger

logger = get_logger("task_runner")

T = TypeVar('T')
R = TypeVar('R')


@dataclass
class TaskOutcome(Generic[T, R]):
    """单个任务的结果：成功值或失败原因"""
    item: T
    value: Optional[R] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], R],
    concurrency: Optional[int] = None,
) -> List[TaskOutcome]:
    """以有界并发执行一批独立任务

    Args:
        items: 任务输入
        worker: 处理单个输入的函数
        concurrency: 并发上限，None 时读取 WTM_CONCURRENCY 或默认 4

    Returns:
        与输入顺序一致的 TaskOutcome 列表

    Raises:
        ConcurrencyConfigError: 并发配置无效（在任何任务开始之前）
    """
    limit = resolve_concurrency(concurrency)
    units = list(items)
    if not units:
        return []

    logger.debug("Running bounded batch", size=len(units), concurrency=limit)

    with ThreadPoolExecutor(max_workers=min(limit, len(units))) as executor:
        futures = [executor.submit(worker, item) for item in units]

        outcomes = []
        for item, future in zip(units, futures):
            error = future.exception()
            if error is not None:
                logger.warning(
                    "Task failed",
                    item=str(item),
                    error_type=type(error).__name__,
                    error=str(error),
                )
                outcomes.append(TaskOutcome(item=item, error=error))
            else:
                outcomes.append(TaskOutcome(item=item, value=future.result()))

    failed = sum(1 for outcome in outcomes if not outcome.ok)
    logger.debug("Bounded batch finished", total=len(outcomes), failed=failed)
    return outcomes
