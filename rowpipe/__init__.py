"""rowpipe: row-oriented multi-step generation pipelines over chat models."""

__version__ = "0.3.0"
