"""Pull request monitor: tracks GitHub pull requests until they close."""

__version__ = "1.0.0"
