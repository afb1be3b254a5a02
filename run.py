#!/usr/bin/env python3
"""
Pool Surveillance - Entry Point
This script ensures proper module paths before importing the main application.
"""
import asyncio
import os
import sys
import traceback
from pathlib import Path

project_root = Path(__file__).parent.resolve()

if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

os.environ['PYTHONPATH'] = str(project_root) + os.pathsep + os.environ.get('PYTHONPATH', '')


def run():
    from main import main

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nPool surveillance stopped by user")
    except Exception as e:
        print(f"\nFatal error: {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    print(f"Project root: {project_root}")
    print("Starting pool surveillance...\n")
    run()
