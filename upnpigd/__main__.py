"""Allow ``python -m upnpigd``."""

from __future__ import annotations

from upnpigd.cli import main

if __name__ == "__main__":
    main()
