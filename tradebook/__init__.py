"""Broker integration layer for the trading journal."""

__version__ = "0.1.0"
