#!/usr/bin/env python3
"""
Campus timeout engine - Main Entrypoint

USAGE:
    python main.py run --config-dir config
    python main.py run --config-dir config --run-once
    python main.py deadletters
    python main.py resolve <message_id> --note "..."
"""

import sys

from campus.cli import main

if __name__ == '__main__':
    sys.exit(main())
