"""Search gateway: admission control, metering and caching in front of a search engine."""

__version__ = "0.1.0"
