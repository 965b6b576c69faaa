"""Leader-side orchestration for CLI coding agents running in tmux."""

__version__ = "0.1.0"

__all__ = ["__version__"]
