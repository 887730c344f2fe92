"""taskrelay — dependency-ordered orchestration of delegated and local tasks."""

__version__ = "0.1.0"
