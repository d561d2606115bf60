"""
Entry point for running Vaultkeeper as a module.

Usage:
    python -m vaultkeeper [command] [options]
"""

from vaultkeeper.cli import main

if __name__ == "__main__":
    main()
