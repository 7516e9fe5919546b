# scripts/create_tables.py
import asyncio
import sys
from pathlib import Path
import os

# Ensure project root is on sys.path so absolute imports work when running
# this script directly (e.g. `python scripts/create_tables.py`).
repo_root = Path(__file__).resolve().parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))
# pydantic-settings reads `.env` relative to the working directory
os.chdir(repo_root)

from fanreply.db.session import init_db

if __name__ == "__main__":
    asyncio.run(init_db())
