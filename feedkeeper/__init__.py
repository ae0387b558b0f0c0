"""Scheduled RSS and Atom scraping with deduplication, and time-partitioned feed blocks."""

__version__ = "0.1.0"
__all__ = ["block", "blockconfig", "feed", "manager", "query", "rss", "scraper"]