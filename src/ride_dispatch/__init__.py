"""Ride dispatch: ride lifecycle, exclusive driver offers and recurring rides."""

__version__ = "0.1.0"
