"""
命令行同步脚本（不启动 Web 服务）

使用方式（推荐从 backend 目录执行）：

   uv run python sync_accounts.py                # 依次同步所有启用账号
   uv run python sync_accounts.py --account 3    # 只同步 id=3 的账号
   uv run python sync_accounts.py --headful      # 显示浏览器窗口（本地排查选择器时使用）

退出码：全部成功为 0；任一账号失败为 1；参数错误为 2。
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import replace

from app.config import settings
from app.database import AsyncSessionLocal, engine, init_db
from app.services.browser import BrowserOptions, BrowserSession
from app.services.sync import SyncService
from app.utils.errors import describe_sync_error


def _build_service(db, *, headful: bool) -> SyncService:
    if not headful:
        return SyncService(db)

    options = replace(BrowserOptions.from_settings(), headless=False)
    return SyncService(db, session_factory=lambda: BrowserSession(options=options))


async def main() -> int:
    parser = argparse.ArgumentParser(description="同步分类信息站点的私信到本地数据库")
    parser.add_argument("--account", type=int, default=None, help="只同步指定账号 id（默认同步全部启用账号）")
    parser.add_argument("--headful", action="store_true", help="显示浏览器窗口（默认无头）")
    parser.add_argument("--verbose", action="store_true", help="输出 DEBUG 日志")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if (args.verbose or settings.debug) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.sql_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    if args.account is not None and args.account <= 0:
        print("[ERROR] --account 必须是正整数")
        return 2

    await init_db()
    try:
        async with AsyncSessionLocal() as db:
            service = _build_service(db, headful=bool(args.headful))

            if args.account is not None:
                try:
                    result = await service.sync_account(args.account)
                except Exception as e:
                    print(f"[ERROR] account_id={args.account}: {describe_sync_error(e)}")
                    return 1
                print(
                    f"[INFO] account_id={args.account}: conversations={result['conversations_seen']} "
                    f"messages={result['messages_synced']} sync_log_id={result['sync_log_id']}"
                )
                return 0

            results = await service.sync_all_accounts()
    finally:
        await engine.dispose()

    if not results:
        print("[INFO] 没有启用的账号")
        return 0

    failed = 0
    for item in results:
        if item["status"] == "success":
            print(
                f"[INFO] {item['account_name']} (id={item['account_id']}): "
                f"conversations={item['conversations']} messages={item['messages']}"
            )
        else:
            failed += 1
            print(f"[ERROR] {item['account_name']} (id={item['account_id']}): {item['error']}")

    print(f"[INFO] Done: {len(results) - failed} succeeded, {failed} failed")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
