"""WTM CLI 主入口

只承载两个长驻进程：事件服务（events start）与事件订阅（events tail）。
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click

from wtm.core.exceptions import EventServerAlreadyRunning, EventServerNotFound, WTMException
from wtm.core.git_client import GitClient
from wtm.events.client import tail_events
from wtm.events.envelope import EventEnvelope, EventType
from wtm.events.server import DEFAULT_HOST, run_event_server

EVENT_TYPES = [event_type.value for event_type in EventType]


def resolve_git_root(root: Optional[str]) -> Path:
    """解析仓库根目录，未指定时从当前目录查找"""
    if root:
        return Path(root).resolve()
    return GitClient(Path.cwd()).get_repo_root()


def format_event(event: EventEnvelope) -> str:
    return f"{event.timestamp}  {event.type:<20}  {event.repo}  ({event.source})"


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    '--root',
    type=click.Path(exists=True, file_okay=False),
    help='仓库根目录，默认从当前目录检测',
)
@click.pass_context
def cli(ctx, root):
    """WTM - Git Worktree 生命周期管理

    \b
    事件命令：
      events start            启动当前仓库的事件服务
      events tail [--type]    订阅并打印生命周期事件
    """
    ctx.ensure_object(dict)
    ctx.obj['root'] = root


@cli.group()
def events():
    """事件服务与订阅"""


@events.command("start")
@click.option('--port', type=int, default=0, show_default=True, help='监听端口，0 表示自动分配')
@click.option('--host', default=DEFAULT_HOST, show_default=True, help='监听地址')
@click.option('--persist', is_flag=True, help='把事件追加写入缓存目录下的 events.jsonl')
@click.pass_context
def events_start(ctx, port, host, persist):
    """启动事件服务（前台运行，Ctrl+C 停止）"""
    git_root = resolve_git_root(ctx.obj.get('root'))
    click.echo(f"Event server for {git_root}", err=True)
    try:
        run_event_server(git_root, port=port, host=host, persist=persist)
    except EventServerAlreadyRunning as e:
        raise click.ClickException(f"{e.message} ({e.details})")


@events.command("tail")
@click.option('--type', 'type_filter', type=click.Choice(EVENT_TYPES), help='只显示该类型的事件')
@click.option('--json', 'as_json', is_flag=True, help='每个事件输出一行 JSON')
@click.pass_context
def events_tail(ctx, type_filter, as_json):
    """订阅并打印事件，直到服务关闭或 Ctrl+C"""
    git_root = resolve_git_root(ctx.obj.get('root'))

    def on_event(event: EventEnvelope) -> None:
        click.echo(event.to_json() if as_json else format_event(event))

    try:
        asyncio.run(tail_events(git_root, on_event, type_filter=type_filter))
    except EventServerNotFound as e:
        raise click.ClickException(e.message)
    except KeyboardInterrupt:
        pass


def main():
    """CLI 入口点，处理全局异常"""
    try:
        cli()
    except WTMException as e:
        click.echo(f"Error: {e.message}", err=True)
        if e.details:
            click.echo(f"  {e.details}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
