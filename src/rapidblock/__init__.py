"""rapidblock: keep a server's domain blocks in sync with a RapidBlock blocklist."""

__version__ = "0.1.0"
