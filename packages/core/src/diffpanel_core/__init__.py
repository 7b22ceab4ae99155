"""diffpanel core: diff filtering, setups, scopes and the multi-reviewer pipeline."""
