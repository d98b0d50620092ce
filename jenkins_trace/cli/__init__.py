"""Command-line interface for jenkins-trace."""
