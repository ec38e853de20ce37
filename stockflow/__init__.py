"""stockflow — inventory and order services coordinated over a message broker."""

__version__ = "0.1.0"
