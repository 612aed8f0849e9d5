#!/usr/bin/env python3
"""
Entry point for the spot position engine.
Wraps spot_engine/cli.py to ensure correct import resolution.
"""
import os
import sys

# Ensure project root is in python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from spot_engine.config.dotenv_loader import load_dotenv_files

# Explicit dotenv loading for local/dev. In prod this is a no-op.
load_dotenv_files()

from spot_engine.cli import app

if __name__ == "__main__":
    app()
