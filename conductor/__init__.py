"""conductor - run a multi-component development stack from one terminal."""

__version__ = "0.4.0"
