"""skiff: a terminal coding agent for the Anthropic Messages API."""
