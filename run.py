#!/usr/bin/env python3
"""
Entry point for the copy-follow engine.
Wraps src/cli.py to ensure correct import resolution.
"""
import sys
import os

# Ensure project root is in python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from src.config.dotenv_loader import load_dotenv_files

# Credentials and DATABASE_URL from .env before config is read. No-op in prod.
load_dotenv_files()

from src.cli import app

if __name__ == "__main__":
    app()
