"""Multi-threaded remote-to-local MySQL database and table sync."""

__version__ = "0.1.0"
