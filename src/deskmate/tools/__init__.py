"""Tool registry and handlers available to the agent."""
