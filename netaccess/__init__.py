"""Command-line client for the IIT Madras netaccess captive portal."""

__version__ = "0.3.0"
