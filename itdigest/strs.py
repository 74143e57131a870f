"""Small string helpers shared across modules."""


def first_non_empty(*args: str) -> str:
    """Return the first argument that is not the empty string, or ""."""
    return next((s for s in args if s), "")