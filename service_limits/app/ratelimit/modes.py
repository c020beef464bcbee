"""
How a rate limit script treats the units it is asked about.
"""

from enum import IntEnum


class ConsumeMode(IntEnum):
    """Sent to the scripts as their last argument."""
    CHECK = 0    # report availability only
    CONSUME = 1  # take the units only when they fit
    CHARGE = 2   # always take the units, an overdraft empties the bucket
