from __future__ import annotations

from refinery.cli import main


if __name__ == "__main__":
    main()
