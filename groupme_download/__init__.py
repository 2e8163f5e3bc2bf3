"""groupme-download: archive GroupMe conversation history to local storage."""

__version__ = "0.3.0"
