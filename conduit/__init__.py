"""Conduit: streaming control-protocol bridge for agent CLIs."""
__version__ = "0.1.0"
