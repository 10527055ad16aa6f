"""Allow python -m projforge to run the CLI."""
from __future__ import annotations

from projforge.cli.main import main

if __name__ == "__main__":
    raise SystemExit(main())
