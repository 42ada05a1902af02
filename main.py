#!/usr/bin/env python3
"""
VTM Option - Main Entry Point
Runs the trading automation scheduler until SIGINT/SIGTERM.
"""
import asyncio
import sys

from vtm_option.app import run
from vtm_option.persistence.db import DatabaseUnavailable

if __name__ == "__main__":
    print("Starting VTM Option scheduler...")
    print("Press Ctrl+C to stop.")
    try:
        asyncio.run(run())
    except DatabaseUnavailable as e:
        print(f"Failed to start: {e}")
        sys.exit(1)
