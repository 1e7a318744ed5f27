"""MEPS exchange-enrollment pipeline: acquire -> process -> estimate."""

__version__ = "0.1.0"
