"""TabSync: keeps tablature source text and its rendered score in step."""

__version__ = "0.1.0"
