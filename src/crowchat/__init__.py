"""CrowChat chat client core: API client, turn orchestration and memory extraction."""

__version__ = "0.1.0"
