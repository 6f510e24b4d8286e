#!/usr/bin/env python3
"""Entry point for the hexship CLI when run as python -m hexship.cli."""

if __name__ == "__main__":
    from hexship.cli.main import main

    main()
