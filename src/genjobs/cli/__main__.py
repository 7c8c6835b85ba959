"""CLI entry point for genjobs.cli module.

Enables execution via: python -m genjobs.cli (runs the recovery sweep)
"""

from genjobs.cli.recover_jobs import main

if __name__ == "__main__":
    raise SystemExit(main())
