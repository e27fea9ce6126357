"""Claude Code hooks that keep a Letta agent in sync with coding sessions."""

__version__ = "0.1.0"
