"""Command-line tools for docslurp."""
