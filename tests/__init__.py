"""Test package for finchat unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
