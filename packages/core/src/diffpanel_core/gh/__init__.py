"""GitHub pull request access."""
