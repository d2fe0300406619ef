"""Allow `python -m localrag`."""

import sys

from .cli import main

sys.exit(main())
