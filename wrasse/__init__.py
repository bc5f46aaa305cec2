"""Wrasse - job archival daemon

Claims finished compute jobs, exports their result streams to the object
store and purges archived job records once they have lingered long enough.
"""

__version__ = "0.1.0"
