"""Entry point for ``python -m uloop_sdk``."""

import sys

from uloop_sdk.cli import main

if __name__ == "__main__":
    sys.exit(main())
