"""Allow ``python -m loopauth``."""

import sys

from .cli import main


sys.exit(main())
