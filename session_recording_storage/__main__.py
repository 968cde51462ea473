"""Entry point for ``python -m session_recording_storage``."""

import sys

from .cli import main

sys.exit(main())
