"""Console entrypoint.

The CLI is implemented in `keysign_ceremony.ceremony.main`.
"""

from __future__ import annotations

from keysign_ceremony.ceremony.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
