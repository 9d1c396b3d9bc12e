#!/usr/bin/env python3
"""
Entry point for the media library CLI.

Run with: python -m manage
"""

from .cli import cli

if __name__ == '__main__':
    cli()
