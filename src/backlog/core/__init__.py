"""Core models, backend contract and the local storage engine."""
