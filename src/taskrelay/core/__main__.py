"""CLI 入口模块 -- python -m taskrelay.core <command>

支持的命令：
  verify-projections  重放事件日志并与 tasks 表比对
"""

import asyncio
import sys

from .config import get_db_path


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print("用法: python -m taskrelay.core <command>")
        print("命令:")
        print("  verify-projections  重放事件日志并与 tasks 表比对")
        sys.exit(1)

    command = sys.argv[1]

    if command == "verify-projections":
        ok = asyncio.run(verify())
        sys.exit(0 if ok else 2)
    else:
        print(f"未知命令: {command}")
        print("可用命令: verify-projections")
        sys.exit(1)


async def verify() -> bool:
    """执行 Projection 校验，返回是否全部一致"""
    from .projection import verify_projections
    from .store import create_store_group

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store_group = await create_store_group(db_path)
    try:
        mismatches = await verify_projections(store_group)
    finally:
        await store_group.close()

    if not mismatches:
        print("校验通过：所有任务状态与事件日志一致")
        return True

    print(f"发现 {len(mismatches)} 处不一致:")
    for m in mismatches:
        replayed = m.replayed_status.value if m.replayed_status else "-"
        print(f"  {m.task_id}: stored={m.stored_status.value} replayed={replayed} ({m.detail})")
    return False


if __name__ == "__main__":
    main()
