"""nightfix: unattended overnight test runs with model-proposed, verified fixes."""

__version__ = "0.1.0"
