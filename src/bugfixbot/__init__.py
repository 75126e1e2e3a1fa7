"""Turn review-bot comments on a pull request into committed fixes."""

__version__ = "0.1.0"
