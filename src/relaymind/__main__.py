"""Allow `python -m relaymind` to run the CLI."""

import asyncio
import sys

from relaymind.main import main

sys.exit(asyncio.run(main()))
