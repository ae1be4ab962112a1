"""Entry point for ``python -m kuro``."""

import sys

from kuro.cli import main

sys.exit(main())
