"""
Stagewise - Command Line Interface

Main CLI entry point: serve, config, migrations.
"""
from cli.main import app, main

__all__ = ["app", "main"]
