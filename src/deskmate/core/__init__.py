"""Agent loop, model boundary and conversation persistence."""
