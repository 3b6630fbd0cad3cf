"""Test helpers for chart-sync tools."""

from chart_sync.command import Command, run

CHART_SYNC_BIN = "chart-sync"


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    return await run(Command([CHART_SYNC_BIN] + args, env=env))
