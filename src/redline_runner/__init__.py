"""Keep an AI coding agent looping, rebooting its session before the context window runs out."""

__version__ = "0.1.0"
