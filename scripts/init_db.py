#!/usr/bin/env python3
"""
数据库初始化脚本
创建学习循环引擎的所有数据表

执行方式：
    cd scripts
    python init_db.py            # 创建缺失的表
    python init_db.py --reset    # 删除并重建所有表（仅开发环境）
"""
import argparse
import logging
import os
import sys
from pathlib import Path

# Add src/backend to path
backend_dir = Path(__file__).parent / ".." / "src" / "backend"
sys.path.insert(0, str(backend_dir))

# Change to backend directory so relative paths work
os.chdir(str(backend_dir))

from app.core.database import DATABASE_URL
from app.models import drop_all, init_db


def main():
    parser = argparse.ArgumentParser(description="初始化学习循环数据库")
    parser.add_argument("--reset", action="store_true", help="删除并重建所有表（会丢失数据）")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    print(f"初始化数据库: {DATABASE_URL}")
    if args.reset:
        drop_all()
    init_db()
    print("完成！")


if __name__ == "__main__":
    main()
