"""
TodoDB: Embedded Todo Record Store
==================================
Entry point for the command-line interface.

Usage:
    python main.py [--data-dir DIR] [--name NAME] COMMAND [args]

Run `python main.py --help` for the command list.
"""

from cli.commands import main


if __name__ == "__main__":
    main()
