"""docweave - hybrid vector, keyword and link-graph retrieval for Markdown notes."""

__version__ = "0.1.0"
