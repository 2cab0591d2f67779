"""hubrelay - real-time message relay with reconnectable logical sessions."""

__version__ = "0.1.0"
