"""diffpanel command-line interface."""
