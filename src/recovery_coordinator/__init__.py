"""Recovery coordinator: queue-triggered event dispatch with deferred re-delivery."""

__version__ = "0.1.0"
