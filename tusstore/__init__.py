"""Upload stores, file locks, event hooks and listening sockets for tus upload servers."""

__version__ = "0.1.0"