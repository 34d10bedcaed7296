"""Allow running crawld with ``python -m crawld``."""

import sys

from crawld.cli import main

sys.exit(main())
