#!/usr/bin/env python3
"""
VulnSweep - Background dependency vulnerability scanner

Main entry point for the CLI when running from a source checkout.

Usage:
    python main.py scan packages.json
    python main.py tasks
"""

from vulnsweep.cli import cli


if __name__ == '__main__':
    cli()
