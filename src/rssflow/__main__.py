"""Allow `python -m rssflow`."""

import sys

from rssflow.cli import main

sys.exit(main())
