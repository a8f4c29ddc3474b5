"""DoxyEdu - a gateway and tab manager for a proxied in-browser web client."""

__version__ = "1.0.0"
