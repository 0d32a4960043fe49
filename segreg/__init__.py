"""Segmented (piecewise) regression of an outcome on a transformed predictor."""

__version__ = "0.1.0"
