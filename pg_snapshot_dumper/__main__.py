#!/usr/bin/env python3
"""
Entry point for running pg_snapshot_dumper as a module.
This file enables: python -m pg_snapshot_dumper
"""

from .main import main

if __name__ == '__main__':
    main()
