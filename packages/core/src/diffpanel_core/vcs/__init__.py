"""Local version control access."""
