"""Everly: edge gateway that admits, validates and signs chat messages for SynapSys."""

__version__ = "1.0.0"
