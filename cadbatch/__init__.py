"""Building blocks for batch analysis of CAD drawings with retries, circuit breaking and resumable progress."""

__version__ = "0.10.0"