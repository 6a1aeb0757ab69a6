"""Live social field: density clusters, convergence prediction and pooled effects."""

__version__ = "0.1.0"
