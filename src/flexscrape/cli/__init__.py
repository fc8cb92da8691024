"""Command-line interface for flexscrape."""
