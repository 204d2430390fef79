#!/usr/bin/env python3
"""Development runner: python run.py COMMAND"""
from snapkeeper.cli import main

if __name__ == '__main__':
    main()
