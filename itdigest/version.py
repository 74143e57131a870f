"""Build metadata for the digest bot."""

VERSION = "dev"
COMMIT = "none"
DATE = "unknown"


def user_agent() -> str:
    """Return the User-Agent sent with every outbound request."""
    return f"it-digest-bot/{VERSION}"


def version_string() -> str:
    """Return a compact one-line summary of the build."""
    return f"it-digest-bot {VERSION} ({COMMIT}, built {DATE})"