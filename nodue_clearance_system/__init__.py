"""No-due clearance evaluation for the IT department portal."""

__version__ = "0.1.0"
