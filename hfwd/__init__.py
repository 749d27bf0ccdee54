"""hfwd - a simple single-destination HTTP forward proxy."""

__version__ = "0.1.0"
