"""
Campus services timeout engine.

Order-lifecycle timeout detection, reliable retrying message delivery with
dead-lettering, live timeout statistics and their broadcast.
"""

__version__ = "0.1.0"
