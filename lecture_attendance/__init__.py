"""Face-verified lecture attendance: live matching and exactly-once presence recording."""

__version__ = "1.0.0"
