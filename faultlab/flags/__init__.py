"""Feature flag controllers."""

from faultlab.flags.controller import FlagController, InMemoryFlagController
from faultlab.flags.flagd_file import FlagdFileController
from faultlab.flags.flagd_http import FlagdHttpController

__all__ = [
    "FlagController",
    "InMemoryFlagController",
    "FlagdFileController",
    "FlagdHttpController",
]
