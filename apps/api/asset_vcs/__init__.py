"""Version control core for 3D asset revisions."""

__version__ = "1.0.0"
