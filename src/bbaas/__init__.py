"""bbaas - browser automation jobs in single-use container sandboxes."""

__version__ = "0.1.0"
