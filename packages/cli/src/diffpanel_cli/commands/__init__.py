"""Click commands registered on the diffpanel group."""
